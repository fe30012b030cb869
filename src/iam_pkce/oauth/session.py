"""Authentication session state.

Projects the flow engine's outcome into the state an application
renders: who is signed in, the current access token, the last error,
and which organization/project is selected.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from iam_pkce.exceptions import IamAuthError
from iam_pkce.logging_config import get_logger
from iam_pkce.oauth.scheduler import DEFAULT_REFRESH_LEEWAY, RefreshScheduler
from iam_pkce.security import decode_jwt_payload

if TYPE_CHECKING:
    from datetime import timedelta

    from iam_pkce.oauth.flows import OAuth2AuthorizationCodeFlow
    from iam_pkce.oauth.tokens import TokenSet

logger = get_logger(__name__)


@dataclass(frozen=True)
class Organization:
    """An organization the user belongs to."""

    name: str
    owner: str = "admin"
    display_name: str | None = None


class OrganizationDirectory(ABC):
    """REST collaborator that lists the user's organizations."""

    @abstractmethod
    async def get_organizations(self, access_token: str) -> list[Organization]:
        """Return organizations visible to the token's user.

        Raises:
            IamAuthError: If the lookup fails
        """


def primary_org_from_token(access_token: str) -> str | None:
    """Return the organization encoded in a ``sub`` claim of the form ``org/user``."""
    claims = decode_jwt_payload(access_token)
    if not claims:
        return None
    sub = claims.get("sub")
    if isinstance(sub, str) and "/" in sub:
        return sub.split("/", 1)[0]
    return None


class AuthSession:
    """Authentication state for one client.

    All methods that talk to the provider record failures in
    :attr:`error`; interactive ones also re-raise them.
    """

    def __init__(
        self,
        flow: OAuth2AuthorizationCodeFlow,
        scheduler: RefreshScheduler | None = None,
        directory: OrganizationDirectory | None = None,
        on_auth_change: Callable[[bool], None] | None = None,
    ) -> None:
        self._flow = flow
        self._scheduler = scheduler
        self._directory = directory
        self._on_auth_change = on_auth_change
        self._storage = flow.storage
        self._keys = flow.keys

        self.user: dict[str, Any] | None = None
        self.is_authenticated = False
        self.is_loading = False
        self.access_token: str | None = flow.get_access_token()
        self.error: Exception | None = None
        self.organizations: list[Organization] = []

    @classmethod
    def with_refresh(
        cls,
        flow: OAuth2AuthorizationCodeFlow,
        leeway: timedelta = DEFAULT_REFRESH_LEEWAY,
        directory: OrganizationDirectory | None = None,
        on_auth_change: Callable[[bool], None] | None = None,
    ) -> AuthSession:
        """Create a session wired to its own refresh scheduler."""
        session = cls(flow, directory=directory, on_auth_change=on_auth_change)
        session._scheduler = RefreshScheduler(
            flow,
            leeway,
            on_refreshed=session.on_token_refreshed,
            on_session_ended=session.on_session_ended,
        )
        return session

    @property
    def scheduler(self) -> RefreshScheduler | None:
        return self._scheduler

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> bool:
        """Restore the session from stored tokens.

        Returns:
            True if a valid access token was found
        """
        self.is_loading = True
        try:
            token = await self._flow.get_valid_access_token()
            if token is None:
                self._notify(False)
                return False
            await self._authenticate(token)
            return True
        except IamAuthError as e:
            self.error = e
            self._notify(False)
            return False
        finally:
            self.is_loading = False

    async def login(self, extra_params: dict[str, str] | None = None) -> str:
        """Start a redirect login and return the authorization URL."""
        self.error = None
        return await self._flow.signin_redirect(extra_params)

    async def login_popup(
        self,
        width: int = 600,
        height: int = 700,
        extra_params: dict[str, str] | None = None,
    ) -> TokenSet:
        """Log in through a popup window."""
        self.error = None
        try:
            tokens = await self._flow.signin_popup(width, height, extra_params)
        except IamAuthError as e:
            self.error = e
            raise
        await self._authenticate(tokens.access_token)
        return tokens

    async def login_silent(self, timeout: float | None = None) -> bool:
        """Try silent sign-in; returns True if the user is now authenticated."""
        tokens = await self._flow.signin_silent(timeout)
        if tokens is None:
            return False
        await self._authenticate(tokens.access_token)
        return True

    async def handle_callback(self, callback_url: str) -> TokenSet:
        """Complete a redirect login."""
        self.error = None
        try:
            tokens = await self._flow.handle_callback(callback_url)
        except IamAuthError as e:
            self.error = e
            raise
        await self._authenticate(tokens.access_token)
        return tokens

    def logout(self) -> None:
        """Clear credentials, stop refreshing and forget the tenant selection."""
        self._flow.clear_tokens()
        if self._scheduler is not None:
            self._scheduler.cancel()
        self.user = None
        self.is_authenticated = False
        self.access_token = None
        self.error = None
        self.organizations = []
        self._storage.set_items({self._keys.current_org: None, self._keys.current_project: None})
        self._notify(False)

    async def _authenticate(self, access_token: str) -> None:
        self.access_token = access_token
        self.is_authenticated = True
        try:
            self.user = await self._flow.get_user_info()
        except IamAuthError as e:
            # token is valid, profile is optional
            logger.info("Authenticated without user profile: %s", e)
        if self._scheduler is not None:
            self._scheduler.arm()
        await self.load_organizations()
        self._notify(True)

    def on_token_refreshed(self, tokens: TokenSet) -> None:
        """Scheduler callback: publish the refreshed access token."""
        self.access_token = tokens.access_token

    def on_session_ended(self, error: Exception) -> None:
        """Scheduler callback: the token could not be refreshed."""
        self.user = None
        self.is_authenticated = False
        self.access_token = None
        self.error = error
        self._notify(False)

    def _notify(self, authenticated: bool) -> None:
        if self._on_auth_change is not None:
            self._on_auth_change(authenticated)

    # ------------------------------------------------------------------
    # Organizations and projects
    # ------------------------------------------------------------------

    @property
    def current_org_id(self) -> str | None:
        return self._storage.get_item(self._keys.current_org)

    @property
    def current_project_id(self) -> str | None:
        return self._storage.get_item(self._keys.current_project)

    @property
    def current_org(self) -> Organization | None:
        current = self.current_org_id
        for org in self.organizations:
            if org.name == current:
                return org
        return None

    async def load_organizations(self) -> list[Organization]:
        """Populate :attr:`organizations` for the current access token.

        The primary organization comes from the token's ``sub`` claim;
        the directory, when available, replaces it with the full list.
        Directory failures keep the token-derived organization.
        """
        if not self.is_authenticated or not self.access_token:
            self.organizations = []
            return self.organizations

        primary = primary_org_from_token(self.access_token)
        if primary:
            self.organizations = [Organization(name=primary, display_name=primary)]
            self._select_default_org(primary)

        if self._directory is not None:
            try:
                orgs = await self._directory.get_organizations(self.access_token)
            except IamAuthError as e:
                logger.info("Could not list organizations: %s", e)
            else:
                if orgs:
                    self.organizations = orgs
                    self._select_default_org(orgs[0].name)

        return self.organizations

    def _select_default_org(self, org_id: str) -> None:
        if not self.current_org_id:
            self._storage.set_item(self._keys.current_org, org_id)

    def switch_org(self, org_id: str) -> None:
        """Select an organization; clears the project selection."""
        self._storage.set_items({self._keys.current_org: org_id, self._keys.current_project: None})

    def switch_project(self, project_id: str | None) -> None:
        """Select a project within the current organization, or clear it."""
        self._storage.set_items({self._keys.current_project: project_id})
