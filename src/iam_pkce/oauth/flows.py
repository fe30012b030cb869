"""OAuth 2.0 Authorization Code flow with PKCE.

The orchestrator builds authorization requests, dispatches them through
one of three interaction strategies (full redirect, popup window, hidden
frame), validates the callback against the persisted pending request,
exchanges the code for tokens and refreshes them afterwards.
"""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from iam_pkce.config import DEFAULT_SCOPE
from iam_pkce.exceptions import (
    AuthorizationError,
    CallbackError,
    CrossOriginAccessError,
    IamAuthError,
    NoRefreshTokenError,
    NotAuthenticatedError,
    PopupBlockedError,
    PopupClosedError,
    RefreshError,
    StorageError,
    TokenExchangeError,
    UserInfoError,
)
from iam_pkce.logging_config import get_logger
from iam_pkce.oauth.discovery import DiscoveryCache, DiscoveryDocument
from iam_pkce.oauth.interaction import (
    FrameHost,
    Navigator,
    PopupWindow,
    WebBrowserNavigator,
    WindowOpener,
)
from iam_pkce.oauth.pending import FlowMode, PendingRequest, PendingRequestStore, verify_state
from iam_pkce.oauth.pkce import CODE_CHALLENGE_METHOD, create_pkce_pair, generate_state
from iam_pkce.oauth.race import Race
from iam_pkce.oauth.tokens import Clock, TokenSet, TokenStore, utcnow
from iam_pkce.security import mask_sensitive_data
from iam_pkce.storage import InMemoryStorage, KeyValueStorage, StorageKeys

if TYPE_CHECKING:
    from iam_pkce.config import Config

logger = get_logger(__name__)

# Default HTTP timeout for OAuth requests
DEFAULT_TIMEOUT = 30.0

POPUP_POLL_INTERVAL = 0.2
POPUP_WINDOW_NAME = "iam_pkce_login"
SILENT_TIMEOUT = 5.0


class FlowState(str, Enum):
    """Authorization attempt lifecycle."""

    IDLE = "idle"
    DISPATCHING = "dispatching"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthorizationRequest:
    """A prepared authorization URL and its persisted correlation record."""

    url: str
    pending: PendingRequest


def build_authorization_url(
    authorization_endpoint: str,
    params: dict[str, str],
) -> str:
    """Append ``params`` to an endpoint, keeping any query it already has.

    Later keys win over earlier ones, including keys already present on
    the endpoint.
    """
    parts = urlsplit(authorization_endpoint)
    merged = dict(parse_qsl(parts.query, keep_blank_values=True))
    merged.update(params)
    return urlunsplit(parts._replace(query=urlencode(merged)))


def parse_callback_url(callback_url: str) -> dict[str, str]:
    """Return the first value of each query parameter of a callback URL."""
    params: dict[str, str] = {}
    for key, value in parse_qsl(urlsplit(callback_url).query, keep_blank_values=True):
        params.setdefault(key, value)
    return params


def _consume_outcome(task: asyncio.Task[TokenSet]) -> None:
    # all awaiters may have been cancelled before the task failed
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Token refresh failed: %s", task.exception())


class OAuth2AuthorizationCodeFlow:
    """OAuth 2.0 Authorization Code flow with PKCE for a public client.

    One instance owns a discovery cache, a pending-request store and a
    token store, all sharing one key-value storage scope.
    """

    def __init__(
        self,
        server_url: str,
        client_id: str,
        redirect_uri: str,
        scope: str = DEFAULT_SCOPE,
        *,
        storage: KeyValueStorage | None = None,
        storage_prefix: str | None = None,
        navigator: Navigator | None = None,
        window_opener: WindowOpener | None = None,
        frame_host: FrameHost | None = None,
        http_client: httpx.AsyncClient | None = None,
        http_timeout: float = DEFAULT_TIMEOUT,
        popup_poll_interval: float = POPUP_POLL_INTERVAL,
        silent_timeout: float = SILENT_TIMEOUT,
        app_name: str | None = None,
        org_name: str | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the authorization code flow.

        Args:
            server_url: Identity provider base URL
            client_id: OAuth client identifier
            redirect_uri: Registered redirect/callback URI
            scope: Space-separated list of scopes
            storage: Key-value storage (defaults to in-memory)
            storage_prefix: Prefix for storage keys
            navigator: Redirect flow target (defaults to the system browser)
            window_opener: Popup flow window factory
            frame_host: Silent flow hidden frame factory
            http_client: Optional custom HTTP client
            http_timeout: Timeout for the HTTP client created when none is given
            popup_poll_interval: Seconds between popup location checks
            silent_timeout: Default silent sign-in timeout in seconds
            app_name: Application name used for the signup URL
            org_name: Organization name used for profile URLs
            clock: Current time source
        """
        self.server_url = server_url.rstrip("/")
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.app_name = app_name
        self.org_name = org_name
        self.popup_poll_interval = popup_poll_interval
        self.silent_timeout = silent_timeout

        self._navigator = navigator or WebBrowserNavigator()
        self._window_opener = window_opener
        self._frame_host = frame_host

        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=http_timeout)

        self.storage = storage if storage is not None else InMemoryStorage()
        self.keys = StorageKeys(storage_prefix) if storage_prefix else StorageKeys()
        self.discovery = DiscoveryCache(self.server_url, self._http_client)
        self.pending = PendingRequestStore(self.storage, self.keys)
        self.tokens = TokenStore(self.storage, self.keys, clock=clock)

        self.state = FlowState.IDLE
        self._refresh_task: asyncio.Task[TokenSet] | None = None

    @classmethod
    def from_config(cls, config: Config, **kwargs: Any) -> OAuth2AuthorizationCodeFlow:
        """Build a flow from configuration; ``kwargs`` supply collaborators."""
        return cls(
            server_url=config.server_url,
            client_id=config.client_id,
            redirect_uri=config.redirect_uri,
            scope=config.scope,
            storage_prefix=config.storage_prefix,
            http_timeout=config.http_timeout,
            popup_poll_interval=config.popup_poll_interval,
            silent_timeout=config.silent_timeout,
            app_name=config.app_name,
            org_name=config.org_name,
            **kwargs,
        )

    async def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client:
            await self._http_client.aclose()

    def _transition(self, new_state: FlowState) -> None:
        logger.debug("Flow state %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def _settle(self, outcome: FlowState) -> None:
        self._transition(outcome)
        self._transition(FlowState.IDLE)

    async def get_discovery(self) -> DiscoveryDocument:
        return await self.discovery.get()

    # ------------------------------------------------------------------
    # Authorization request
    # ------------------------------------------------------------------

    async def prepare_authorization(
        self,
        flow_mode: FlowMode = FlowMode.REDIRECT,
        extra_params: dict[str, str] | None = None,
        forced_params: dict[str, str] | None = None,
    ) -> AuthorizationRequest:
        """Create PKCE material, persist the pending request and build the URL.

        The pending request is written before the URL is returned, so a
        callback can never arrive for a request that has not been stored.

        Args:
            flow_mode: Strategy the URL will be dispatched with
            extra_params: Caller parameters, overriding the defaults
            forced_params: Parameters applied after the caller's

        Returns:
            The URL and its pending request

        Raises:
            DiscoveryError: If provider metadata cannot be loaded
        """
        self._transition(FlowState.DISPATCHING)
        try:
            discovery = await self.discovery.get()
        except IamAuthError:
            self._settle(FlowState.FAILED)
            raise

        pkce = create_pkce_pair()
        pending = PendingRequest(
            state=generate_state(),
            code_verifier=pkce.code_verifier,
            flow_mode=flow_mode,
        )

        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": pending.state,
            "code_challenge": pkce.code_challenge,
            "code_challenge_method": CODE_CHALLENGE_METHOD,
        }
        params.update(extra_params or {})
        params.update(forced_params or {})

        self.pending.save(pending)
        url = build_authorization_url(discovery.authorization_endpoint, params)
        logger.debug(
            "Created %s authorization URL for client %s", flow_mode.value, self.client_id
        )
        return AuthorizationRequest(url=url, pending=pending)

    async def signin_redirect(self, extra_params: dict[str, str] | None = None) -> str:
        """Start the login by sending the browsing context to the provider.

        The continuation is not kept in memory: the page (or process)
        that receives the redirect calls :meth:`handle_callback`.

        Returns:
            The authorization URL that was navigated to
        """
        request = await self.prepare_authorization(FlowMode.REDIRECT, extra_params)
        self._transition(FlowState.AWAITING_CALLBACK)
        self._navigator.navigate(request.url)
        return request.url

    async def signin_popup(
        self,
        width: int = 600,
        height: int = 700,
        extra_params: dict[str, str] | None = None,
    ) -> TokenSet:
        """Run the login in a popup window and wait for it to finish.

        Raises:
            PopupBlockedError: If the window could not be opened
            PopupClosedError: If the user closed the window first
            IamAuthError: For callback or token exchange failures
        """
        if self._window_opener is None:
            msg = "signin_popup requires a window_opener"
            raise ValueError(msg)

        request = await self.prepare_authorization(FlowMode.POPUP, extra_params)
        features = f"width={width},height={height},menubar=no,toolbar=no"
        popup = self._window_opener.open(request.url, POPUP_WINDOW_NAME, features)
        if popup is None:
            self.pending.discard(request.pending.state)
            self._settle(FlowState.FAILED)
            logger.info("Login popup was blocked")
            raise PopupBlockedError()

        self._transition(FlowState.AWAITING_CALLBACK)
        race: Race[str] = Race()
        race.on_release(lambda: None if popup.closed else popup.close())
        poller = asyncio.create_task(self._poll_popup(popup, race))

        def stop_poller() -> None:
            if poller is not asyncio.current_task():
                poller.cancel()

        race.on_release(stop_poller)

        try:
            callback_url = await race.wait()
        except PopupClosedError:
            self.pending.discard(request.pending.state)
            self._settle(FlowState.FAILED)
            logger.info("Login popup was closed before completing")
            raise
        except asyncio.CancelledError:
            self.pending.discard(request.pending.state)
            self._settle(FlowState.FAILED)
            raise

        return await self.handle_callback(callback_url)

    async def _poll_popup(self, popup: PopupWindow, race: Race[str]) -> None:
        while not race.settled:
            await asyncio.sleep(self.popup_poll_interval)
            if popup.closed:
                race.reject(PopupClosedError())
                return
            try:
                location = popup.location
            except CrossOriginAccessError:
                # still on the provider's origin
                continue
            if location.startswith(self.redirect_uri):
                race.resolve(location)
                return

    async def signin_silent(
        self,
        timeout: float | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> TokenSet | None:
        """Try to sign in through a hidden frame without user interaction.

        Succeeds only when the provider already has a session for the
        user. Every failure mode (timeout, provider page shown, provider
        error, exchange failure) yields None.

        Args:
            timeout: Seconds to wait (defaults to ``silent_timeout``)
            extra_params: Additional authorization parameters

        Returns:
            TokenSet on success, None otherwise
        """
        if self._frame_host is None:
            msg = "signin_silent requires a frame_host"
            raise ValueError(msg)

        timeout = self.silent_timeout if timeout is None else timeout
        request = await self.prepare_authorization(
            FlowMode.SILENT, extra_params, forced_params={"prompt": "none"}
        )

        race: Race[str | None] = Race()
        frame = self._frame_host.create_hidden_frame(request.url)
        race.on_release(frame.remove)
        timer = asyncio.get_running_loop().call_later(timeout, race.resolve, None)
        race.on_release(timer.cancel)

        def on_load() -> None:
            if race.settled:
                return
            try:
                location = frame.location
            except CrossOriginAccessError:
                # provider rendered its own page: no session to reuse
                race.resolve(None)
                return
            if location.startswith(self.redirect_uri):
                race.resolve(location)

        frame.add_load_listener(on_load)
        self._transition(FlowState.AWAITING_CALLBACK)

        try:
            callback_url = await race.wait()
        except asyncio.CancelledError:
            self.pending.discard(request.pending.state)
            self._settle(FlowState.FAILED)
            raise
        if callback_url is None:
            self.pending.discard(request.pending.state)
            self._settle(FlowState.FAILED)
            logger.info("Silent sign-in did not complete")
            return None

        try:
            return await self.handle_callback(callback_url)
        except IamAuthError as e:
            logger.info("Silent sign-in failed: %s", e)
            return None

    # ------------------------------------------------------------------
    # Callback and code exchange
    # ------------------------------------------------------------------

    async def handle_callback(self, callback_url: str) -> TokenSet:
        """Complete an authorization attempt from its callback URL.

        The pending request is removed before any check runs, so it is
        never usable twice.

        Raises:
            AuthorizationError: If the provider reported an error
            CallbackError: If the callback has no code
            CsrfError: If the state does not match the pending request
            TokenExchangeError: If the token endpoint rejects the code
        """
        params = parse_callback_url(callback_url)
        pending = self.pending.take()

        try:
            error = params.get("error")
            if error:
                logger.info("Provider returned error %s", error)
                raise AuthorizationError(error, params.get("error_description"))

            code = params.get("code")
            if not code:
                raise CallbackError("missing code")

            pending = verify_state(pending, params.get("state"))

            self._transition(FlowState.EXCHANGING)
            tokens = await self.exchange_code_for_tokens(code, pending.code_verifier)
        except IamAuthError:
            self._settle(FlowState.FAILED)
            raise

        self._settle(FlowState.AUTHENTICATED)
        return tokens

    async def exchange_code_for_tokens(self, code: str, code_verifier: str) -> TokenSet:
        """Exchange an authorization code for tokens and store them.

        Raises:
            TokenExchangeError: If the token endpoint rejects the request
        """
        discovery = await self.discovery.get()
        data = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "code_verifier": code_verifier,
        }

        logger.debug("Exchanging authorization code for tokens")
        tokens = await self._request_tokens(
            discovery.token_endpoint, data, TokenExchangeError, "Token exchange"
        )
        self.tokens.store(tokens)
        logger.info("Successfully exchanged code for tokens (scope: %s)", tokens.scope or "N/A")
        return tokens

    async def _request_tokens(
        self,
        token_endpoint: str,
        data: dict[str, str],
        error_cls: type[IamAuthError],
        action: str,
    ) -> TokenSet:
        try:
            response = await self._http_client.post(
                token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            received_at = self.tokens.now()
            token_data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "%s failed: %s %s - %s",
                action,
                e.response.status_code,
                e.response.reason_phrase,
                e.response.text,
            )
            raise error_cls(
                f"{action} failed",
                status_code=e.response.status_code,
                body=e.response.text,
            ) from e
        except httpx.HTTPError as e:
            logger.error("%s error: %s", action, e)
            raise error_cls(f"{action} error: {e}") from e
        except ValueError as e:
            raise error_cls(f"{action} returned invalid JSON: {e}") from e

        if not isinstance(token_data, dict):
            raise error_cls(f"{action} response is not a JSON object")

        logger.debug("%s response: %s", action, mask_sensitive_data(token_data))
        try:
            return TokenSet.from_token_response(token_data, received_at=received_at)
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise error_cls(f"{action} response is malformed: {e}") from e

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> TokenSet:
        """Refresh the access token using the stored refresh token.

        Concurrent callers share a single outstanding token request.
        A failed refresh leaves the stored tokens untouched.

        Raises:
            NoRefreshTokenError: If no refresh token is stored
            RefreshError: If the token endpoint rejects the refresh
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh())
            self._refresh_task.add_done_callback(_consume_outcome)
        else:
            logger.debug("Joining in-flight token refresh")
        return await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> TokenSet:
        refresh_token = self.tokens.get_refresh()
        if not refresh_token:
            raise NoRefreshTokenError()

        discovery = await self.discovery.get()
        data = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "refresh_token": refresh_token,
        }

        logger.debug("Refreshing access token")
        tokens = await self._request_tokens(
            discovery.token_endpoint, data, RefreshError, "Token refresh"
        )
        if tokens.refresh_token is None:
            tokens = dataclasses.replace(tokens, refresh_token=refresh_token)

        self.tokens.store(tokens)
        logger.info("Successfully refreshed access token")
        return tokens

    # ------------------------------------------------------------------
    # Token access
    # ------------------------------------------------------------------

    def get_access_token(self) -> str | None:
        """Get the stored access token (may be expired)."""
        return self.tokens.get_access()

    def get_refresh_token(self) -> str | None:
        return self.tokens.get_refresh()

    def get_id_token(self) -> str | None:
        return self.tokens.get_id_token()

    def is_token_expired(self) -> bool:
        return self.tokens.is_expired()

    async def get_valid_access_token(self) -> str | None:
        """Return an unexpired access token, refreshing once if needed.

        Never raises for refresh failures; they yield None.
        """
        token = self.tokens.get_access()
        if token and not self.tokens.is_expired():
            return token

        if not self.tokens.get_refresh():
            return None

        try:
            tokens = await self.refresh()
        except (IamAuthError, StorageError) as e:
            logger.warning("Could not refresh access token: %s", e)
            return None
        return tokens.access_token

    def clear_tokens(self) -> None:
        """Forget all credentials and any pending authorization (logout)."""
        self.tokens.clear()
        self.pending.clear()
        logger.info("Cleared stored credentials")

    # ------------------------------------------------------------------
    # User info
    # ------------------------------------------------------------------

    async def get_user_info(self) -> dict[str, Any]:
        """Fetch the user profile from the userinfo endpoint.

        Raises:
            NotAuthenticatedError: If no valid access token is available
            UserInfoError: If the userinfo request fails
        """
        token = await self.get_valid_access_token()
        if not token:
            raise NotAuthenticatedError()

        discovery = await self.discovery.get()
        logger.debug("Fetching user info")

        try:
            response = await self._http_client.get(
                discovery.userinfo_endpoint,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/json",
                },
            )
            response.raise_for_status()
            user_data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Userinfo fetch failed: %s %s",
                e.response.status_code,
                e.response.reason_phrase,
            )
            raise UserInfoError(
                "Userinfo fetch failed",
                status_code=e.response.status_code,
                body=e.response.text,
            ) from e
        except httpx.HTTPError as e:
            logger.error("Userinfo fetch error: %s", e)
            raise UserInfoError(f"Userinfo fetch error: {e}") from e
        except ValueError as e:
            raise UserInfoError(f"Userinfo returned invalid JSON: {e}") from e

        if not isinstance(user_data, dict):
            raise UserInfoError("Userinfo response is not a JSON object")

        logger.debug(
            "Retrieved user info for: %s",
            user_data.get("email", user_data.get("preferred_username", "unknown")),
        )
        return user_data

    # ------------------------------------------------------------------
    # Provider URLs
    # ------------------------------------------------------------------

    def get_signup_url(self, enable_password: bool = False) -> str:
        """Build the signup page URL on the provider."""
        url = f"{self.server_url}/signup/{self.app_name or 'app'}"
        if enable_password:
            url += "?enablePassword=true"
        return url

    def get_user_profile_url(self, username: str) -> str:
        """Build the user profile page URL on the provider."""
        return f"{self.server_url}/users/{self.org_name or 'built-in'}/{username}"
