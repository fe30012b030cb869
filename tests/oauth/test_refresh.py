"""Tests for token refresh, access token retrieval and userinfo."""

from __future__ import annotations

import asyncio
import gc
from datetime import timedelta

import httpx
import pytest
import respx

from iam_pkce.exceptions import (
    NoRefreshTokenError,
    NotAuthenticatedError,
    RefreshError,
    UserInfoError,
)
from iam_pkce.oauth.flows import OAuth2AuthorizationCodeFlow
from iam_pkce.oauth.tokens import TokenSet

from conftest import CLIENT_ID, TOKEN_URL, USERINFO_URL, FakeClock, form_params, token_response


def seed_tokens(
    flow: OAuth2AuthorizationCodeFlow,
    clock: FakeClock,
    *,
    expires_in: float = -1,
    refresh_token: str | None = "refresh-old",
) -> None:
    """Store an access token expiring ``expires_in`` seconds from now."""
    flow.tokens.store(
        TokenSet(
            access_token="access-old",
            refresh_token=refresh_token,
            expires_at=clock.now + timedelta(seconds=expires_in),
        )
    )


class TestRefresh:
    """Tests for refresh."""

    @pytest.mark.asyncio
    async def test_refresh_grant(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        """Test that the refresh grant is posted and the result stored."""
        route = idp.post(TOKEN_URL).mock(
            return_value=token_response("access-new", "refresh-new", 1800)
        )
        seed_tokens(flow, clock)

        tokens = await flow.refresh()

        assert form_params(route.calls.last.request) == {
            "grant_type": "refresh_token",
            "client_id": CLIENT_ID,
            "refresh_token": "refresh-old",
        }
        assert tokens.access_token == "access-new"
        assert flow.get_access_token() == "access-new"
        assert flow.get_refresh_token() == "refresh-new"
        assert flow.tokens.get_expires_at() == clock.now + timedelta(seconds=1800)

    @pytest.mark.asyncio
    async def test_keeps_refresh_token_when_not_rotated(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        idp.post(TOKEN_URL).mock(return_value=token_response("access-new", refresh_token=None))
        seed_tokens(flow, clock)

        tokens = await flow.refresh()

        assert tokens.refresh_token == "refresh-old"
        assert flow.get_refresh_token() == "refresh-old"

    @pytest.mark.asyncio
    async def test_without_refresh_token(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        """Test that no request is made without a refresh token."""
        route = idp.post(TOKEN_URL).mock(return_value=token_response())
        seed_tokens(flow, clock, refresh_token=None)

        with pytest.raises(NoRefreshTokenError):
            await flow.refresh()

        assert route.call_count == 0

    @pytest.mark.asyncio
    async def test_failure_keeps_stored_tokens(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        """Test that a rejected refresh leaves storage untouched."""
        idp.post(TOKEN_URL).mock(return_value=httpx.Response(400, json={"error": "invalid_grant"}))
        seed_tokens(flow, clock)

        with pytest.raises(RefreshError) as exc_info:
            await flow.refresh()

        assert exc_info.value.status_code == 400
        assert flow.get_access_token() == "access-old"
        assert flow.get_refresh_token() == "refresh-old"

    @pytest.mark.asyncio
    async def test_non_object_body(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        """Test that a 200 response that is not a token object is a RefreshError."""
        idp.post(TOKEN_URL).mock(return_value=httpx.Response(200, json=[]))
        seed_tokens(flow, clock)

        with pytest.raises(RefreshError, match="not a JSON object"):
            await flow.refresh()

        assert flow.get_access_token() == "access-old"

    @pytest.mark.asyncio
    async def test_unrepresentable_expiry(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        idp.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "n", "expires_in": 1e300})
        )
        seed_tokens(flow, clock)

        with pytest.raises(RefreshError, match="malformed"):
            await flow.refresh()

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_request(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        """Test that simultaneous refreshes coalesce into one token request."""
        route = idp.post(TOKEN_URL).mock(return_value=token_response("access-new"))
        seed_tokens(flow, clock)

        results = await asyncio.gather(flow.refresh(), flow.refresh(), flow.refresh())

        assert route.call_count == 1
        assert {tokens.access_token for tokens in results} == {"access-new"}

    @pytest.mark.asyncio
    async def test_failure_after_callers_cancelled_is_not_reported_unhandled(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        """Test that an abandoned refresh that fails leaves no unretrieved exception."""
        route = idp.post(TOKEN_URL).mock(
            side_effect=[
                httpx.Response(400, json={"error": "invalid_grant"}),
                token_response("access-new"),
            ]
        )
        seed_tokens(flow, clock)
        loop = asyncio.get_running_loop()
        reported: list[dict[str, object]] = []
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(lambda _loop, context: reported.append(context))
        try:
            caller = asyncio.create_task(flow.refresh())
            await asyncio.sleep(0)
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller

            for _ in range(200):
                if route.call_count:
                    break
                await asyncio.sleep(0.005)
            await asyncio.sleep(0.01)

            # a later refresh replaces the finished task
            assert (await flow.refresh()).access_token == "access-new"
            gc.collect()
            await asyncio.sleep(0)
        finally:
            loop.set_exception_handler(previous_handler)

        assert route.call_count == 2
        assert reported == []

    @pytest.mark.asyncio
    async def test_sequential_calls_each_refresh(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        route = idp.post(TOKEN_URL).mock(return_value=token_response())
        seed_tokens(flow, clock)

        await flow.refresh()
        await flow.refresh()

        assert route.call_count == 2


class TestGetValidAccessToken:
    """Tests for get_valid_access_token."""

    @pytest.mark.asyncio
    async def test_unexpired_token_without_request(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        route = idp.post(TOKEN_URL).mock(return_value=token_response())
        seed_tokens(flow, clock, expires_in=600)

        assert await flow.get_valid_access_token() == "access-old"
        assert route.call_count == 0

    @pytest.mark.asyncio
    async def test_expired_token_refreshes_once(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        """Test that an expired token triggers exactly one refresh request."""
        route = idp.post(TOKEN_URL).mock(return_value=token_response("access-new"))
        seed_tokens(flow, clock, expires_in=600)
        clock.advance(601)

        assert await flow.get_valid_access_token() == "access-new"
        assert await flow.get_valid_access_token() == "access-new"
        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_refresh_failure_yields_none(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        idp.post(TOKEN_URL).mock(return_value=httpx.Response(401))
        seed_tokens(flow, clock)

        assert await flow.get_valid_access_token() is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [[], "x", {"access_token": "n", "expires_in": 1e300}],
        ids=["array", "string", "huge-expiry"],
    )
    async def test_unusable_refresh_response_yields_none(
        self,
        flow: OAuth2AuthorizationCodeFlow,
        clock: FakeClock,
        idp: respx.MockRouter,
        body: object,
    ) -> None:
        """Test that an unusable 200 refresh response degrades to None."""
        idp.post(TOKEN_URL).mock(return_value=httpx.Response(200, json=body))
        seed_tokens(flow, clock)

        assert await flow.get_valid_access_token() is None
        assert flow.get_access_token() == "access-old"

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        route = idp.post(TOKEN_URL).mock(return_value=token_response())
        seed_tokens(flow, clock, refresh_token=None)

        assert await flow.get_valid_access_token() is None
        assert route.call_count == 0

    @pytest.mark.asyncio
    async def test_nothing_stored(self, flow: OAuth2AuthorizationCodeFlow) -> None:
        assert await flow.get_valid_access_token() is None


class TestClearTokens:
    """Tests for clear_tokens."""

    @pytest.mark.asyncio
    async def test_clears_tokens_and_pending(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        seed_tokens(flow, clock, expires_in=600)
        await flow.signin_redirect()

        flow.clear_tokens()

        assert flow.get_access_token() is None
        assert flow.get_refresh_token() is None
        assert flow.pending.peek() is None
        assert flow.is_token_expired() is True


class TestGetUserInfo:
    """Tests for get_user_info."""

    @pytest.mark.asyncio
    async def test_sends_bearer_token(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        route = idp.get(USERINFO_URL).mock(
            return_value=httpx.Response(200, json={"sub": "org/alice", "email": "a@b.c"})
        )
        seed_tokens(flow, clock, expires_in=600)

        user = await flow.get_user_info()

        assert user["email"] == "a@b.c"
        assert route.calls.last.request.headers["authorization"] == "Bearer access-old"

    @pytest.mark.asyncio
    async def test_not_authenticated(self, flow: OAuth2AuthorizationCodeFlow) -> None:
        with pytest.raises(NotAuthenticatedError):
            await flow.get_user_info()

    @pytest.mark.asyncio
    async def test_rejected(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        idp.get(USERINFO_URL).mock(return_value=httpx.Response(401, text="expired"))
        seed_tokens(flow, clock, expires_in=600)

        with pytest.raises(UserInfoError) as exc_info:
            await flow.get_user_info()

        assert exc_info.value.status_code == 401
        assert exc_info.value.body == "expired"

    @pytest.mark.asyncio
    async def test_non_object_body(
        self, flow: OAuth2AuthorizationCodeFlow, clock: FakeClock, idp: respx.MockRouter
    ) -> None:
        idp.get(USERINFO_URL).mock(return_value=httpx.Response(200, json=["alice"]))
        seed_tokens(flow, clock, expires_in=600)

        with pytest.raises(UserInfoError, match="not a JSON object"):
            await flow.get_user_info()
