"""Tests for the authorization window monitor."""

import asyncio
from unittest.mock import patch

import pytest

from connect_core.clients.authorization_window import (
    BrowserWindowOpener,
    WindowMonitor,
)
from tests.conftest import FakeWindow


class TestWindowMonitor:
    @pytest.mark.asyncio
    async def test_reports_close_once(self):
        calls = []
        window = FakeWindow("https://example.com/authorize")
        monitor = WindowMonitor(
            window, on_closed=lambda: calls.append(1), poll_interval_seconds=0.01
        )
        monitor.start()

        window.closed = True
        await asyncio.sleep(0.05)

        assert calls == [1]
        assert not monitor.active
        assert monitor.window is None

    @pytest.mark.asyncio
    async def test_async_callback(self):
        closed = asyncio.Event()

        async def on_closed():
            closed.set()

        window = FakeWindow("https://example.com/authorize")
        monitor = WindowMonitor(
            window, on_closed=on_closed, poll_interval_seconds=0.01
        )
        monitor.start()
        window.closed = True

        await asyncio.wait_for(closed.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_dispose_stops_polling(self):
        calls = []
        window = FakeWindow("https://example.com/authorize")
        monitor = WindowMonitor(
            window, on_closed=lambda: calls.append(1), poll_interval_seconds=0.01
        )
        monitor.start()

        monitor.dispose()
        window.closed = True
        await asyncio.sleep(0.05)

        assert calls == []
        assert not monitor.active

    @pytest.mark.asyncio
    async def test_disposed_monitor_cannot_restart(self):
        monitor = WindowMonitor(
            FakeWindow("https://example.com"), on_closed=lambda: None
        )
        monitor.dispose()

        with pytest.raises(RuntimeError):
            monitor.start()


class TestBrowserWindowOpener:
    def test_opens_url(self):
        with patch("webbrowser.open", return_value=True) as mock_open:
            window = BrowserWindowOpener().open("https://example.com/authorize")

        mock_open.assert_called_once_with("https://example.com/authorize", new=1)
        assert window.closed is False

        window.close()
        assert window.closed is True

    def test_no_browser_reports_closed(self):
        with patch("webbrowser.open", return_value=False):
            window = BrowserWindowOpener().open("https://example.com/authorize")

        assert window.closed is True
