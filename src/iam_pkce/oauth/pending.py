"""Pending authorization request correlation.

A pending request binds the ``state`` sent to the provider to the PKCE
verifier needed for the code exchange. It lives in key-value storage
so it survives a full-page redirect, and it is single use.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from iam_pkce.exceptions import CsrfError
from iam_pkce.logging_config import get_logger
from iam_pkce.security import constant_time_equals
from iam_pkce.storage import KeyValueStorage, StorageKeys

logger = get_logger(__name__)


class FlowMode(str, Enum):
    """Interaction strategy that started an authorization attempt."""

    REDIRECT = "redirect"
    POPUP = "popup"
    SILENT = "silent"


@dataclass(frozen=True)
class PendingRequest:
    """Correlation record for one authorization attempt."""

    state: str
    code_verifier: str
    flow_mode: FlowMode


def verify_state(request: PendingRequest | None, state: str | None) -> PendingRequest:
    """Check a callback ``state`` against the consumed pending request.

    Args:
        request: The request taken from storage, or None if none was pending
        state: The ``state`` value received in the callback

    Returns:
        The matching pending request

    Raises:
        CsrfError: If no request was pending or the state differs
    """
    if request is None or not constant_time_equals(request.state, state):
        logger.warning(
            "Rejected callback: state mismatch (pending request present: %s)",
            request is not None,
        )
        raise CsrfError("state mismatch")
    return request


class PendingRequestStore:
    """Holds at most one pending request per storage scope.

    Saving a new request overwrites an unconsumed earlier one, which
    implicitly abandons that attempt.
    """

    def __init__(self, storage: KeyValueStorage, keys: StorageKeys | None = None) -> None:
        self._storage = storage
        self._keys = keys or StorageKeys()

    def save(self, request: PendingRequest) -> None:
        """Persist a pending request, replacing any previous one."""
        if self.peek() is not None:
            logger.debug("Discarding unfinished authorization attempt")
        self._storage.set_items(
            {
                self._keys.state: request.state,
                self._keys.code_verifier: request.code_verifier,
                self._keys.flow_mode: request.flow_mode.value,
            }
        )

    def peek(self) -> PendingRequest | None:
        """Return the stored request without consuming it."""
        state = self._storage.get_item(self._keys.state)
        verifier = self._storage.get_item(self._keys.code_verifier)
        if not state or not verifier:
            return None

        raw_mode = self._storage.get_item(self._keys.flow_mode)
        try:
            mode = FlowMode(raw_mode) if raw_mode else FlowMode.REDIRECT
        except ValueError:
            mode = FlowMode.REDIRECT
        return PendingRequest(state=state, code_verifier=verifier, flow_mode=mode)

    def take(self) -> PendingRequest | None:
        """Remove and return the stored request."""
        request = self.peek()
        self.clear()
        return request

    def discard(self, state: str) -> bool:
        """Remove the stored request only if it belongs to ``state``.

        Returns:
            True if a request was removed
        """
        request = self.peek()
        if request is None or request.state != state:
            return False
        self.clear()
        return True

    def clear(self) -> None:
        """Remove any stored request."""
        self._storage.set_items(
            {
                self._keys.state: None,
                self._keys.code_verifier: None,
                self._keys.flow_mode: None,
            }
        )
