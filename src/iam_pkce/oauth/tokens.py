"""Token set model and storage-backed token store."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from iam_pkce.logging_config import get_logger
from iam_pkce.storage import KeyValueStorage, StorageKeys

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def to_epoch_millis(instant: datetime) -> int:
    return (instant - _EPOCH) // timedelta(milliseconds=1)


def from_epoch_millis(value: str) -> datetime:
    return _EPOCH + timedelta(milliseconds=int(value))


@dataclass(frozen=True)
class TokenSet:
    """OAuth 2.0 token set.

    ``expires_at`` is always computed from ``expires_in`` relative to
    when the response arrived, never taken from a server timestamp.
    """

    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the access token is expired; no expiry counts as expired."""
        if self.expires_at is None:
            return True
        return (now or utcnow()) >= self.expires_at

    @classmethod
    def from_token_response(
        cls,
        response: dict[str, Any],
        received_at: datetime | None = None,
    ) -> TokenSet:
        """Create a TokenSet from a token endpoint response.

        Args:
            response: Token endpoint JSON body
            received_at: When the response arrived (defaults to now)

        Returns:
            TokenSet instance

        Raises:
            KeyError: If the response has no access_token
        """
        expires_at = None
        expires_in = response.get("expires_in")
        if expires_in is not None:
            expires_at = (received_at or utcnow()) + timedelta(seconds=float(expires_in))

        return cls(
            access_token=response["access_token"],
            refresh_token=response.get("refresh_token"),
            id_token=response.get("id_token"),
            expires_at=expires_at,
            token_type=response.get("token_type", "Bearer"),
            scope=response.get("scope"),
        )


class TokenStore:
    """Holds the current credential set in key-value storage.

    Writes go through one ``set_items`` call so a reader never sees a
    new access token paired with a stale expiry.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        keys: StorageKeys | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._storage = storage
        self._keys = keys or StorageKeys()
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def store(self, tokens: TokenSet) -> None:
        """Replace the stored credentials.

        A token set without a refresh or ID token keeps the previously
        stored one. A token set without an expiry removes the stored
        expiry, which makes the access token count as expired.
        """
        updates: dict[str, str | None] = {
            self._keys.access_token: tokens.access_token,
            self._keys.expires_at: (
                str(to_epoch_millis(tokens.expires_at)) if tokens.expires_at else None
            ),
        }
        if tokens.refresh_token:
            updates[self._keys.refresh_token] = tokens.refresh_token
        if tokens.id_token:
            updates[self._keys.id_token] = tokens.id_token

        self._storage.set_items(updates)
        logger.debug(
            "Stored tokens (expires: %s, refresh token: %s)",
            tokens.expires_at.isoformat() if tokens.expires_at else "unknown",
            "yes" if self.get_refresh() else "no",
        )

    def get_access(self) -> str | None:
        """Get the stored access token (may be expired)."""
        return self._storage.get_item(self._keys.access_token)

    def get_refresh(self) -> str | None:
        return self._storage.get_item(self._keys.refresh_token)

    def get_id_token(self) -> str | None:
        return self._storage.get_item(self._keys.id_token)

    def get_expires_at(self) -> datetime | None:
        """Return the stored expiry, or None if absent or unreadable."""
        raw = self._storage.get_item(self._keys.expires_at)
        if not raw:
            return None
        try:
            return from_epoch_millis(raw)
        except (ValueError, OverflowError, OSError):
            logger.warning("Ignoring malformed stored expiry %r", raw)
            return None

    def get_token_set(self) -> TokenSet | None:
        """Return the stored credentials as a TokenSet, or None if empty."""
        access_token = self.get_access()
        if access_token is None:
            return None
        return TokenSet(
            access_token=access_token,
            refresh_token=self.get_refresh(),
            id_token=self.get_id_token(),
            expires_at=self.get_expires_at(),
        )

    def is_expired(self) -> bool:
        """Check the stored expiry against the clock; no expiry counts as expired."""
        expires_at = self.get_expires_at()
        if expires_at is None:
            return True
        return self.now() >= expires_at

    def clear(self) -> None:
        """Remove all stored credentials."""
        self._storage.set_items(
            {
                self._keys.access_token: None,
                self._keys.refresh_token: None,
                self._keys.id_token: None,
                self._keys.expires_at: None,
            }
        )
        logger.debug("Cleared stored tokens")
