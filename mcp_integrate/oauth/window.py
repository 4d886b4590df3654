"""Host UI surface for authorization: popup windows and redirects.

A popup is represented by a PopupHandle. The default BrowserPopup opens
the authorization URL in the user's browser and receives the redirect on
a LocalhostCallbackServer; other hosts (GUI toolkits, test doubles) can
provide their own handle through a popup factory.

Waiting for the popup is a background polling task owned by the
WindowManager, cancelled by close().
"""

import asyncio
import logging
import webbrowser
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..errors import UserCancelledError
from .callback import DEFAULT_TIMEOUT, CallbackParams, LocalhostCallbackServer

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5  # seconds


@dataclass
class PopupOptions:
    """Popup window geometry and lifetime.

    Width and height are honored by hosts that draw their own window;
    a system browser decides its own geometry.
    """

    width: int = 600
    height: int = 700
    timeout: float = DEFAULT_TIMEOUT


class PopupHandle(ABC):
    """An open authorization window."""

    @abstractmethod
    async def open(self) -> None:
        """Show the window."""
        pass

    @abstractmethod
    def poll(self) -> CallbackParams | None:
        """Return the redirect parameters once the window reached the redirect URI."""
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Whether the window is gone (closed by the user, timed out, or closed by us)."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the window and release its resources. Idempotent."""
        pass


class BrowserPopup(PopupHandle):
    """Authorization "window" backed by the system browser.

    The redirect is captured by a localhost listener bound to the redirect
    URI. The browser tab cannot be observed, so the popup counts as closed
    once the timeout elapses without a redirect.
    """

    def __init__(self, url: str, redirect_uri: str, options: PopupOptions | None = None):
        self.url = url
        self.redirect_uri = redirect_uri
        self.options = options or PopupOptions()
        self._server = LocalhostCallbackServer.for_redirect_uri(redirect_uri, timeout=self.options.timeout)
        self._deadline: float | None = None
        self._closed = False

    async def open(self) -> None:
        await self._server.start()
        self._deadline = asyncio.get_running_loop().time() + self.options.timeout

        if not webbrowser.open(self.url):
            logger.warning(f"Could not open a browser. Open this URL manually:\n{self.url}")

    def poll(self) -> CallbackParams | None:
        return self._server.result

    @property
    def closed(self) -> bool:
        if self._closed:
            return True
        if self._deadline is None:
            return False
        return asyncio.get_running_loop().time() >= self._deadline

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._server.stop()


PopupFactory = Callable[[str, str, PopupOptions], PopupHandle]
RedirectHook = Callable[[str], Awaitable[None] | None]


class WindowManager:
    """Opens authorization windows and waits for their callback."""

    def __init__(
        self,
        popup_factory: PopupFactory | None = None,
        on_redirect: RedirectHook | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        """Initialize the window manager.

        Args:
            popup_factory: Builds a PopupHandle from (url, redirect_uri, options);
                defaults to BrowserPopup
            on_redirect: Called with the authorization URL in redirect mode;
                defaults to opening the system browser
            poll_interval: Seconds between popup checks
        """
        self.popup_factory: PopupFactory = popup_factory or BrowserPopup
        self.on_redirect = on_redirect
        self.poll_interval = poll_interval

        self._popup: PopupHandle | None = None
        self._poll_task: asyncio.Task[CallbackParams] | None = None
        self._closing_tasks: set[asyncio.Task[None]] = set()
        self._cancelled_by_close = False

    @property
    def popup(self) -> PopupHandle | None:
        return self._popup

    async def open_popup(
        self,
        url: str,
        redirect_uri: str,
        options: PopupOptions | None = None,
    ) -> PopupHandle:
        """Open the authorization URL in a popup.

        Any popup still open from a previous flow is closed first.
        """
        if self._popup is not None:
            await self._close_popup()

        popup = self.popup_factory(url, redirect_uri, options or PopupOptions())
        self._popup = popup
        self._cancelled_by_close = False
        await popup.open()
        logger.debug("Opened authorization popup")
        return popup

    async def open_redirect(self, url: str) -> None:
        """Send the user to the authorization URL without waiting."""
        if self.on_redirect is not None:
            result = self.on_redirect(url)
            if asyncio.iscoroutine(result):
                await result
            return

        if not webbrowser.open(url):
            logger.warning(f"Could not open a browser. Open this URL manually:\n{url}")

    async def listen_for_callback(self) -> CallbackParams:
        """Wait until the popup delivers its redirect parameters.

        Returns:
            The redirect parameters (success or provider error)

        Raises:
            UserCancelledError: If the popup closed without a redirect,
                or close() was called while waiting
        """
        popup = self._popup
        if popup is None:
            raise UserCancelledError("No authorization window is open")

        task = asyncio.create_task(self._poll(popup))
        self._poll_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled() and self._cancelled_by_close:
                raise UserCancelledError("Authorization window was closed") from None
            raise
        finally:
            self._poll_task = None
            if self._popup is popup:
                await self._close_popup()

    async def _poll(self, popup: PopupHandle) -> CallbackParams:
        while True:
            params = popup.poll()
            if params is not None:
                return params

            if popup.closed:
                raise UserCancelledError("Authorization window closed before completing")

            await asyncio.sleep(self.poll_interval)

    async def _close_popup(self) -> None:
        popup, self._popup = self._popup, None
        if popup is not None:
            await popup.close()

    def close(self) -> None:
        """Cancel the polling task and close the popup.

        Safe to call repeatedly and when nothing is open. The popup itself
        is closed on the running loop in the background.
        """
        if self._poll_task is not None and not self._poll_task.done():
            self._cancelled_by_close = True
            self._poll_task.cancel()

        if self._popup is None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: nothing left to await the popup on
            self._popup = None
            return

        task = loop.create_task(self._close_popup())
        self._closing_tasks.add(task)
        task.add_done_callback(self._closing_tasks.discard)

    async def aclose(self) -> None:
        """Close everything and wait for the popup to shut down."""
        self.close()
        if self._closing_tasks:
            await asyncio.gather(*self._closing_tasks, return_exceptions=True)
        await self._close_popup()
