"""
Authorization window handles and the window monitor.

The provider's consent page is shown in a separate window. The flow
controller only needs two things from it: whether it has been closed, and a
way to close it. The WindowMonitor polls ``closed`` on an asyncio task and
reports closure once; disposing the monitor cancels the task and drops the
window reference.
"""

import asyncio
import inspect
import webbrowser
from typing import Any, Callable, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 1.0


class AuthorizationWindow(Protocol):
    @property
    def closed(self) -> bool: ...

    def close(self) -> None: ...


class WindowOpener(Protocol):
    def open(self, url: str) -> AuthorizationWindow: ...


class BrowserWindow:
    """
    Handle for a URL opened in the system browser.

    A browser tab cannot be observed from here, so the handle only reports
    closed after ``close()`` is called (e.g. by a desktop shell hooking the
    tab's lifetime).
    """

    def __init__(self, url: str):
        self.url = url
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


class BrowserWindowOpener:
    """Opens authorization URLs with the ``webbrowser`` module."""

    def open(self, url: str) -> BrowserWindow:
        opened = webbrowser.open(url, new=1)
        window = BrowserWindow(url)
        if not opened:
            logger.warning("No browser available for authorization window")
            window.close()
        return window


class WindowMonitor:
    """
    Cancellable poll of an authorization window.

    Args:
        window: Window handle to watch
        on_closed: Called once (sync or async) when the window is seen closed
        poll_interval_seconds: Seconds between checks
    """

    def __init__(
        self,
        window: AuthorizationWindow,
        on_closed: Callable[[], Any],
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        self._window: Optional[AuthorizationWindow] = window
        self._on_closed = on_closed
        self.poll_interval_seconds = poll_interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def window(self) -> Optional[AuthorizationWindow]:
        return self._window

    def start(self) -> None:
        if self.active:
            return
        if self._window is None:
            raise RuntimeError("WindowMonitor has been disposed")
        self._task = asyncio.create_task(self._poll())

    async def _poll(self) -> None:
        while self._window is not None:
            await asyncio.sleep(self.poll_interval_seconds)
            window = self._window
            if window is None:
                return
            if window.closed:
                logger.debug("Authorization window closed")
                self._window = None
                result = self._on_closed()
                if inspect.isawaitable(result):
                    await result
                return

    def dispose(self) -> None:
        """Stop polling and release the window handle."""
        self._window = None
        task, self._task = self._task, None
        # The close callback may dispose the monitor from inside the poll task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
