"""OIDC discovery document fetching and caching."""

from __future__ import annotations

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from iam_pkce.exceptions import DiscoveryError
from iam_pkce.logging_config import get_logger

logger = get_logger(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"


class DiscoveryDocument(BaseModel):
    """Endpoints published by the identity provider.

    Only the three endpoints the flows need are required; the rest are
    kept when present.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    issuer: str | None = None
    jwks_uri: str | None = None
    end_session_endpoint: str | None = None

    @field_validator("authorization_endpoint", "token_endpoint", "userinfo_endpoint")
    @classmethod
    def require_url(cls, v: str) -> str:
        """Reject empty or relative endpoint values."""
        if not v.startswith(("http://", "https://")):
            msg = f"endpoint must be an absolute http(s) URL, got {v!r}"
            raise ValueError(msg)
        return v


def well_known_url(server_url: str) -> str:
    """Return the discovery URL for a provider base URL."""
    return server_url.rstrip("/") + WELL_KNOWN_PATH


class DiscoveryCache:
    """Lazily fetches the discovery document once per instance.

    There is no TTL and no invalidation; build a new client to pick up
    changed provider metadata.
    """

    def __init__(self, server_url: str, http_client: httpx.AsyncClient) -> None:
        self._url = well_known_url(server_url)
        self._http_client = http_client
        self._document: DiscoveryDocument | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def cached(self) -> DiscoveryDocument | None:
        return self._document

    async def get(self) -> DiscoveryDocument:
        """Return the discovery document, fetching it on first use.

        Raises:
            DiscoveryError: If the endpoint is unreachable, answers with a
                non-success status, or the body lacks required endpoints
        """
        if self._document is not None:
            return self._document

        logger.debug("Fetching OIDC discovery document from %s", self._url)

        try:
            response = await self._http_client.get(
                self._url, headers={"Accept": "application/json"}
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("OIDC discovery failed: %s", e.response.status_code)
            raise DiscoveryError(
                "OIDC discovery failed",
                status_code=e.response.status_code,
                body=e.response.text,
            ) from e
        except httpx.HTTPError as e:
            logger.error("OIDC discovery request error: %s", e)
            raise DiscoveryError(f"OIDC discovery request error: {e}") from e
        except ValueError as e:
            raise DiscoveryError(f"OIDC discovery returned invalid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise DiscoveryError("OIDC discovery document is not a JSON object")

        try:
            document = DiscoveryDocument.model_validate(payload)
        except ValidationError as e:
            logger.error("OIDC discovery document is malformed: %s", e)
            raise DiscoveryError(f"OIDC discovery document is malformed: {e}") from e

        self._document = document
        logger.info("Loaded OIDC discovery document (issuer: %s)", document.issuer or "N/A")
        return document
