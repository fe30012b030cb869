"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import base64
import json
from collections.abc import Awaitable, Callable, Iterator
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import respx

from iam_pkce.config import Config, LogLevel
from iam_pkce.exceptions import CrossOriginAccessError
from iam_pkce.oauth.flows import OAuth2AuthorizationCodeFlow
from iam_pkce.oauth.interaction import (
    FrameHost,
    HiddenFrame,
    Navigator,
    PopupWindow,
    WindowOpener,
)
from iam_pkce.storage import InMemoryStorage

SERVER_URL = "https://iam.example.com"
DISCOVERY_URL = f"{SERVER_URL}/.well-known/openid-configuration"
AUTHORIZATION_URL = f"{SERVER_URL}/login/oauth/authorize"
TOKEN_URL = f"{SERVER_URL}/api/login/oauth/access_token"
USERINFO_URL = f"{SERVER_URL}/api/userinfo"
CLIENT_ID = "my-app"
REDIRECT_URI = "https://app/cb"

DISCOVERY = {
    "issuer": SERVER_URL,
    "authorization_endpoint": AUTHORIZATION_URL,
    "token_endpoint": TOKEN_URL,
    "userinfo_endpoint": USERINFO_URL,
    "jwks_uri": f"{SERVER_URL}/.well-known/jwks",
}


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNavigator(Navigator):
    def __init__(self) -> None:
        self.urls: list[str] = []

    def navigate(self, url: str) -> None:
        self.urls.append(url)


class FakePopup(PopupWindow):
    """Popup that stays cross-origin until ``arrive`` is called."""

    def __init__(self) -> None:
        self._closed = False
        self._location: str | None = None
        self.location_reads = 0
        self.close_calls = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def location(self) -> str:
        self.location_reads += 1
        if self._location is None:
            raise CrossOriginAccessError("Blocked a frame with origin")
        return self._location

    def close(self) -> None:
        self.close_calls += 1
        self._closed = True

    def arrive(self, url: str) -> None:
        self._location = url

    def user_close(self) -> None:
        self._closed = True


class FakeWindowOpener(WindowOpener):
    def __init__(self, blocked: bool = False) -> None:
        self.blocked = blocked
        self.popup = FakePopup()
        self.opened: list[tuple[str, str, str]] = []

    def open(self, url: str, name: str, features: str) -> PopupWindow | None:
        self.opened.append((url, name, features))
        if self.blocked:
            return None
        return self.popup


class FakeFrame(HiddenFrame):
    """Hidden frame whose loads are triggered by the test."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._location: str | None = None
        self._listeners: list[Callable[[], None]] = []
        self.remove_calls = 0

    def add_load_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    @property
    def location(self) -> str:
        if self._location is None:
            raise CrossOriginAccessError("Blocked a frame with origin")
        return self._location

    def remove(self) -> None:
        self.remove_calls += 1

    def load(self, url: str | None) -> None:
        """Simulate a navigation; None means a cross-origin page."""
        self._location = url
        for listener in list(self._listeners):
            listener()


class FakeFrameHost(FrameHost):
    def __init__(self) -> None:
        self.frames: list[FakeFrame] = []

    def create_hidden_frame(self, url: str) -> HiddenFrame:
        frame = FakeFrame(url)
        self.frames.append(frame)
        return frame


def query_params(url: str) -> dict[str, str]:
    """Return the single-valued query parameters of a URL."""
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def form_params(request: httpx.Request) -> dict[str, str]:
    """Return the single-valued form fields of a request body."""
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def make_jwt(claims: dict[str, object]) -> str:
    """Build an unsigned compact JWT carrying ``claims``."""

    def encode(part: dict[str, object]) -> str:
        raw = json.dumps(part).encode()
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()

    return f"{encode({'alg': 'none', 'typ': 'JWT'})}.{encode(claims)}.sig"


def token_response(
    access_token: str = "access123",
    refresh_token: str | None = "refresh123",
    expires_in: int | None = 3600,
    **extra: object,
) -> httpx.Response:
    body: dict[str, object] = {"access_token": access_token, "token_type": "Bearer"}
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    if expires_in is not None:
        body["expires_in"] = expires_in
    body.update(extra)
    return httpx.Response(200, json=body)


@pytest.fixture
def default_config() -> Config:
    """Create a default configuration for testing."""
    return Config()


@pytest.fixture
def client_config() -> Config:
    """Create a configuration pointing at the mocked provider."""
    return Config(
        server_url=SERVER_URL,
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        log_level=LogLevel.DEBUG,
        popup_poll_interval=0.01,
    )


@pytest.fixture
def idp() -> Iterator[respx.MockRouter]:
    """Mocked identity provider serving the discovery document."""
    with respx.mock(assert_all_called=False) as router:
        router.get(DISCOVERY_URL, name="discovery").mock(
            return_value=httpx.Response(200, json=DISCOVERY)
        )
        yield router


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def navigator() -> RecordingNavigator:
    return RecordingNavigator()


@pytest.fixture
def opener() -> FakeWindowOpener:
    return FakeWindowOpener()


@pytest.fixture
def frame_host() -> FakeFrameHost:
    return FakeFrameHost()


@pytest.fixture
def flow(
    client_config: Config,
    storage: InMemoryStorage,
    navigator: RecordingNavigator,
    opener: FakeWindowOpener,
    frame_host: FakeFrameHost,
    clock: FakeClock,
) -> OAuth2AuthorizationCodeFlow:
    """Flow wired to in-memory storage, fake browsing contexts and a fake clock."""
    return OAuth2AuthorizationCodeFlow.from_config(
        client_config,
        storage=storage,
        navigator=navigator,
        window_opener=opener,
        frame_host=frame_host,
        clock=clock,
    )


@pytest.fixture
def wait_until() -> Callable[[Callable[[], bool]], Awaitable[None]]:
    """Return a coroutine function that polls a predicate until it holds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                msg = "condition not met in time"
                raise AssertionError(msg)
            await asyncio.sleep(0.005)

    return _wait
