"""Tests for OIDC discovery caching."""

from __future__ import annotations

import httpx
import pytest
import respx

from iam_pkce.exceptions import DiscoveryError
from iam_pkce.oauth.discovery import DiscoveryCache, DiscoveryDocument, well_known_url

from conftest import AUTHORIZATION_URL, DISCOVERY, DISCOVERY_URL, SERVER_URL, TOKEN_URL


def test_well_known_url_strips_trailing_slashes() -> None:
    """Test that trailing slashes do not produce a double slash."""
    assert well_known_url(f"{SERVER_URL}//") == DISCOVERY_URL


class TestDiscoveryCache:
    """Tests for DiscoveryCache class."""

    @pytest.mark.asyncio
    async def test_fetches_once(self, idp: respx.MockRouter) -> None:
        """Test that the document is fetched once and then served from memory."""
        async with httpx.AsyncClient() as client:
            cache = DiscoveryCache(SERVER_URL, client)

            first = await cache.get()
            second = await cache.get()

        assert first is second
        assert first.authorization_endpoint == AUTHORIZATION_URL
        assert first.token_endpoint == TOKEN_URL
        assert idp.routes["discovery"].call_count == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_non_success_status(self) -> None:
        """Test that a 5xx answer raises DiscoveryError with the status."""
        respx.get(DISCOVERY_URL).mock(return_value=httpx.Response(503, text="down"))

        async with httpx.AsyncClient() as client:
            cache = DiscoveryCache(SERVER_URL, client)
            with pytest.raises(DiscoveryError) as exc_info:
                await cache.get()

        assert exc_info.value.status_code == 503
        assert exc_info.value.body == "down"
        assert cache.cached is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_unreachable(self) -> None:
        """Test that a transport failure raises DiscoveryError."""
        respx.get(DISCOVERY_URL).mock(side_effect=httpx.ConnectError("refused"))

        async with httpx.AsyncClient() as client:
            with pytest.raises(DiscoveryError, match="request error"):
                await DiscoveryCache(SERVER_URL, client).get()

    @respx.mock
    @pytest.mark.asyncio
    async def test_missing_endpoint(self) -> None:
        """Test that a document without userinfo_endpoint is rejected."""
        body = {k: v for k, v in DISCOVERY.items() if k != "userinfo_endpoint"}
        respx.get(DISCOVERY_URL).mock(return_value=httpx.Response(200, json=body))

        async with httpx.AsyncClient() as client:
            with pytest.raises(DiscoveryError, match="malformed"):
                await DiscoveryCache(SERVER_URL, client).get()

    @respx.mock
    @pytest.mark.asyncio
    async def test_invalid_json(self) -> None:
        """Test that a non-JSON body is rejected."""
        respx.get(DISCOVERY_URL).mock(return_value=httpx.Response(200, text="<html>"))

        async with httpx.AsyncClient() as client:
            with pytest.raises(DiscoveryError, match="invalid JSON"):
                await DiscoveryCache(SERVER_URL, client).get()

    @respx.mock
    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self) -> None:
        """Test that a failed fetch is retried by the next call."""
        route = respx.get(DISCOVERY_URL)
        route.side_effect = [
            httpx.Response(500),
            httpx.Response(200, json=DISCOVERY),
        ]

        async with httpx.AsyncClient() as client:
            cache = DiscoveryCache(SERVER_URL, client)
            with pytest.raises(DiscoveryError):
                await cache.get()
            document = await cache.get()

        assert document.userinfo_endpoint == DISCOVERY["userinfo_endpoint"]
        assert route.call_count == 2


def test_document_rejects_relative_endpoint() -> None:
    """Test that endpoints must be absolute URLs."""
    with pytest.raises(ValueError):
        DiscoveryDocument(
            authorization_endpoint="/authorize",
            token_endpoint=TOKEN_URL,
            userinfo_endpoint=TOKEN_URL,
        )
