"""Preemptive access token refresh."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING

from iam_pkce.exceptions import IamAuthError, StorageError
from iam_pkce.logging_config import get_logger

if TYPE_CHECKING:
    from iam_pkce.oauth.flows import OAuth2AuthorizationCodeFlow
    from iam_pkce.oauth.tokens import TokenSet

logger = get_logger(__name__)

# Refresh this long before the stored expiry
DEFAULT_REFRESH_LEEWAY = timedelta(seconds=60)


class RefreshScheduler:
    """Keeps one timer armed to refresh the token before it expires.

    On a successful refresh the timer is re-armed for the new expiry.
    On failure the session is marked unauthenticated and
    ``on_session_ended`` is called; stored tokens are left for the
    caller to clear.
    """

    def __init__(
        self,
        flow: OAuth2AuthorizationCodeFlow,
        leeway: timedelta = DEFAULT_REFRESH_LEEWAY,
        on_refreshed: Callable[[TokenSet], None] | None = None,
        on_session_ended: Callable[[Exception], None] | None = None,
    ) -> None:
        self._flow = flow
        self._leeway = leeway
        self._on_refreshed = on_refreshed
        self._on_session_ended = on_session_ended
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self.authenticated = True

    @property
    def armed(self) -> bool:
        """True while a timer or an immediate refresh is pending."""
        return self._timer is not None or (self._task is not None and not self._task.done())

    def arm(self) -> float | None:
        """Schedule the next refresh from the stored expiry.

        Any previous timer is cancelled first.

        Returns:
            Seconds until the refresh fires, or None if nothing was armed
        """
        self._cancel_timer()

        tokens = self._flow.tokens
        expires_at = tokens.get_expires_at()
        if expires_at is None or tokens.is_expired():
            logger.debug("Not arming refresh: no unexpired token")
            return None

        self.authenticated = True
        delay = max((expires_at - tokens.now() - self._leeway).total_seconds(), 0.0)
        # scheduled even at zero delay: _fire ignores calls while a refresh runs
        self._timer = asyncio.get_running_loop().call_later(delay, self._fire)
        if delay == 0.0:
            logger.debug("Token expires within leeway, refreshing now")
        else:
            logger.debug("Token refresh scheduled in %.1f seconds", delay)
        return delay

    def cancel(self) -> None:
        """Stop the timer and any refresh it started."""
        self._cancel_timer()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        self._timer = None
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run_refresh())

    async def _run_refresh(self) -> None:
        try:
            tokens = await self._flow.refresh()
        except (IamAuthError, StorageError) as e:
            logger.warning("Scheduled token refresh failed: %s", e)
            self.authenticated = False
            if self._on_session_ended is not None:
                self._on_session_ended(e)
            return

        if self._on_refreshed is not None:
            self._on_refreshed(tokens)
        self.arm()
