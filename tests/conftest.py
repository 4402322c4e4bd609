"""
Shared test fixtures and configuration for connect-core tests.

Provides the FastAPI test client, a controllable clock, fake authorization
windows and stub token executors so flows can be driven without a browser
or a real provider.
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

# Set test environment before importing the app
os.environ.update(
    {
        "APP_ENV": "test",
        "LOG_LEVEL": "DEBUG",
        "FERNET_KEY": "ZmDfcTF7_60GrrY167zsiPd67pEvs0aGOv2oasOM1Pg=",
        "OAUTH_BACKGROUND_REFRESH_ENABLED": "false",
        "QUICKBOOKS_CLIENT_ID": "qb-test-client",
        "QUICKBOOKS_CLIENT_SECRET": "qb-test-secret",
        "HUBSPOT_CLIENT_ID": "hs-test-client",
        "HUBSPOT_CLIENT_SECRET": "hs-test-secret",
        "STRIPE_CLIENT_ID": "ca_test_client",
        "STRIPE_CLIENT_SECRET": "sk_test_secret",
    }
)

from connect_core.app import app  # noqa: E402
from connect_core.config import get_settings  # noqa: E402
from connect_core.errors import ExchangeFailed, RefreshFailed  # noqa: E402
from connect_core.platforms import Platform  # noqa: E402
from connect_core.services.token_health import TokenRecord  # noqa: E402
from connect_core.utils.alerting import AlertManager  # noqa: E402


@pytest.fixture(scope="function")
def test_client():
    """
    FastAPI TestClient with the application lifespan running.

    Each test gets a fresh state store and coordinator.
    """
    with TestClient(app) as client:
        yield client


@pytest.fixture(scope="session")
def test_settings():
    return get_settings()


class FakeClock:
    """Monotonic-style clock advanced by hand."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


class FakeWindow:
    def __init__(self, url: str):
        self.url = url
        self.closed = False
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class FakeWindowOpener:
    """Records every authorization URL it is asked to open."""

    def __init__(self):
        self.windows: List[FakeWindow] = []

    def open(self, url: str) -> FakeWindow:
        window = FakeWindow(url)
        self.windows.append(window)
        return window

    @property
    def last(self) -> Optional[FakeWindow]:
        return self.windows[-1] if self.windows else None


@pytest.fixture
def window_opener():
    return FakeWindowOpener()


def make_record(
    platform: Platform = Platform.QUICKBOOKS,
    access_token: Optional[str] = "access-token-value",
    refresh_token: Optional[str] = "refresh-token-value",
    expires_in: Optional[float] = 7200,
    now: Optional[datetime] = None,
    scopes=("com.intuit.quickbooks.accounting",),
) -> TokenRecord:
    """Build a token record expiring ``expires_in`` seconds after ``now``."""
    now = now or datetime.now(timezone.utc)
    return TokenRecord(
        platform=platform,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=(
            now + timedelta(seconds=expires_in) if expires_in is not None else None
        ),
        issued_at=now,
        scopes=tuple(scopes),
    )


class StubExchanger:
    """TokenExchanger returning a fixed record or raising a configured error."""

    def __init__(self, error: Optional[Exception] = None, delay: float = 0):
        self.error = error
        self.delay = delay
        self.calls: List[Dict] = []

    async def exchange(
        self, platform, code, code_verifier=None, redirect_uri=None, realm_context=None
    ):
        self.calls.append(
            {
                "platform": platform,
                "code": code,
                "code_verifier": code_verifier,
                "redirect_uri": redirect_uri,
                "realm_context": realm_context,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        record = make_record(platform=platform)
        if realm_context and realm_context.get("realmId"):
            record.metadata["realm_id"] = realm_context["realmId"]
        return record


class BlockingRefreshExecutor:
    """RefreshExecutor that blocks until released, counting calls."""

    def __init__(self, fail_with: Optional[RefreshFailed] = None):
        self.calls = 0
        self.release = asyncio.Event()
        self.fail_with = fail_with

    async def refresh(self, record: TokenRecord) -> TokenRecord:
        self.calls += 1
        await self.release.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return make_record(
            platform=record.platform,
            access_token=f"refreshed-{self.calls}",
            refresh_token=None,
            expires_in=3600 * 3,
        )

    async def wait_for_calls(self, count: int, timeout: float = 1.0) -> None:
        """Wait until ``count`` refreshes have reached the executor."""

        async def poll():
            while self.calls < count:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
def stub_exchanger():
    return StubExchanger()


@pytest.fixture
def failing_exchanger():
    return StubExchanger(error=ExchangeFailed("Token exchange failed with status 400"))


@pytest.fixture
def alert_manager():
    return AlertManager()
