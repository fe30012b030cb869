"""Browsing-context seams used by the interactive flows.

The flow engine never touches a concrete browser. It drives these small
interfaces, which an embedding (a webview bridge, a test fake, a desktop
launcher) implements.
"""

from __future__ import annotations

import webbrowser
from abc import ABC, abstractmethod
from collections.abc import Callable

from iam_pkce.logging_config import get_logger

logger = get_logger(__name__)


class Navigator(ABC):
    """Sends the current browsing context to a URL (redirect flow)."""

    @abstractmethod
    def navigate(self, url: str) -> None:
        """Leave the current context for ``url``."""


class WebBrowserNavigator(Navigator):
    """Opens the authorization URL in the system browser."""

    def navigate(self, url: str) -> None:
        logger.debug("Opening system browser for authorization")
        if not webbrowser.open(url):
            logger.warning("No browser available, open the authorization URL manually")


class PopupWindow(ABC):
    """A secondary window opened for the popup flow."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once the user (or code) has closed the window."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Current URL of the window.

        Raises:
            CrossOriginAccessError: While the window shows another origin
        """

    @abstractmethod
    def close(self) -> None:
        """Close the window."""


class WindowOpener(ABC):
    """Opens popup windows."""

    @abstractmethod
    def open(self, url: str, name: str, features: str) -> PopupWindow | None:
        """Open a window, returning None if it was blocked."""


class HiddenFrame(ABC):
    """An invisible, zero-size frame used for silent sign-in."""

    @abstractmethod
    def add_load_listener(self, listener: Callable[[], None]) -> None:
        """Call ``listener`` every time the frame finishes a navigation."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Current URL of the frame.

        Raises:
            CrossOriginAccessError: While the frame shows another origin
        """

    @abstractmethod
    def remove(self) -> None:
        """Detach the frame and stop delivering events."""


class FrameHost(ABC):
    """Creates hidden frames."""

    @abstractmethod
    def create_hidden_frame(self, url: str) -> HiddenFrame:
        """Create and attach a hidden frame pointed at ``url``."""
