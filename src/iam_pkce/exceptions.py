"""Exceptions raised by the PKCE client."""

from __future__ import annotations


class IamAuthError(Exception):
    """Base exception for authentication flow errors.

    Attributes:
        message: Human-readable error message
        status_code: HTTP status code (if applicable)
        body: Raw response body (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        if self.status_code:
            return f"[{self.status_code}] {self.message}"
        return self.message


class DiscoveryError(IamAuthError):
    """Raised when the OIDC discovery document is unreachable or malformed."""


class AuthorizationError(IamAuthError):
    """Raised when the provider returns an ``error`` in the callback.

    Attributes:
        error: OAuth error code (e.g. ``login_required``)
        description: Provider supplied ``error_description``
    """

    def __init__(self, error: str, description: str | None = None) -> None:
        super().__init__(f"OAuth error: {description or error}")
        self.error = error
        self.description = description


class CsrfError(IamAuthError):
    """Raised when the callback state does not match the pending request."""

    def __init__(self, message: str = "state mismatch") -> None:
        super().__init__(message)


class CallbackError(IamAuthError):
    """Raised when a callback URL lacks the authorization code."""

    def __init__(self, message: str = "missing code") -> None:
        super().__init__(message)


class TokenExchangeError(IamAuthError):
    """Raised when the authorization code exchange is rejected."""


class RefreshError(IamAuthError):
    """Raised when the token endpoint rejects a refresh grant."""


class NoRefreshTokenError(RefreshError):
    """Raised when a refresh is requested without a stored refresh token."""

    def __init__(self, message: str = "No refresh token available") -> None:
        super().__init__(message)


class NotAuthenticatedError(IamAuthError):
    """Raised when an operation needs a valid access token and none exists."""

    def __init__(self, message: str = "No valid access token, user must log in") -> None:
        super().__init__(message)


class UserInfoError(IamAuthError):
    """Raised when the userinfo endpoint request fails."""


class InteractionCancelled(IamAuthError):
    """Base for user-cancellation outcomes of interactive flows.

    These are not system faults and should be handled separately from
    network or protocol errors.
    """


class PopupBlockedError(InteractionCancelled):
    """Raised when the login popup could not be opened."""

    def __init__(self, message: str = "Failed to open login popup, blocked by browser?") -> None:
        super().__init__(message)


class PopupClosedError(InteractionCancelled):
    """Raised when the user closes the popup before completing login."""

    def __init__(self, message: str = "Login popup was closed before completing") -> None:
        super().__init__(message)


class CrossOriginAccessError(Exception):
    """Raised by window adapters when a location is not readable yet.

    Pollers treat this as "not arrived", never as a failure.
    """


class StorageError(Exception):
    """Error during key-value storage operations."""
