"""
Background token refresh coordinator.

Keeps every connected platform's tokens fresh:
- Periodic tick (default every 60 seconds) classifies each tracked record
- Critical or expired records with a refresh token get a refresh task
- At most one refresh per platform is in flight; different platforms
  refresh concurrently
- A tick never waits for the refreshes it starts
- Failures are counted, alerted and retried on the next tick; after
  ``max_refresh_attempts`` consecutive failures (or a terminal provider
  error) automatic refresh stops and the platform needs re-authorization
- Transitions into ``expired`` notify once per transition

Nothing raised by a refresh escapes the background loop.
"""

import asyncio
import inspect
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from connect_core.config import Settings
from connect_core.errors import RefreshFailed
from connect_core.platforms import Platform
from connect_core.services.oauth_executors import RefreshExecutor
from connect_core.services.token_health import (
    HealthStatus,
    TokenHealth,
    TokenHealthClassifier,
    TokenRecord,
)
from connect_core.utils.alerting import AlertManager, get_alert_manager

logger = structlog.get_logger(__name__)

DEFAULT_CHECK_INTERVAL_SECONDS = 60
DEFAULT_REFRESH_TIMEOUT_SECONDS = 10.0

_REFRESHABLE = (HealthStatus.CRITICAL, HealthStatus.EXPIRED)


@dataclass
class _TrackedToken:
    record: TokenRecord
    refresh_attempts: int = 0
    last_status: Optional[HealthStatus] = None
    reauth_required: bool = False
    last_error: Optional[str] = None


class TokenRefreshCoordinator:
    """
    Periodic health check and refresh scheduler for tracked token records.

    Args:
        refresh_executor: Collaborator performing the refresh_token grant
        classifier: Health classifier (default thresholds when omitted)
        interval_seconds: Seconds between ticks of the background loop
        refresh_timeout_seconds: Timeout applied to each refresh call
        max_refresh_attempts: Consecutive failures before giving up on a
            platform; None retries forever
        on_expired: Called with the platform when its token becomes expired
        on_refresh_failed: Called with the platform and the RefreshFailed error
        on_reauth_required: Called with the platform when automatic refresh stops
        alert_manager: Alert sink for failures and expiry
    """

    def __init__(
        self,
        refresh_executor: RefreshExecutor,
        classifier: Optional[TokenHealthClassifier] = None,
        interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        refresh_timeout_seconds: float = DEFAULT_REFRESH_TIMEOUT_SECONDS,
        max_refresh_attempts: Optional[int] = None,
        on_expired: Optional[Callable[[Platform], Any]] = None,
        on_refresh_failed: Optional[Callable[[Platform, RefreshFailed], Any]] = None,
        on_reauth_required: Optional[Callable[[Platform], Any]] = None,
        alert_manager: Optional[AlertManager] = None,
    ):
        self.refresh_executor = refresh_executor
        self.classifier = classifier or TokenHealthClassifier()
        self.interval_seconds = interval_seconds
        self.refresh_timeout_seconds = refresh_timeout_seconds
        self.max_refresh_attempts = max_refresh_attempts
        self.on_expired = on_expired
        self.on_refresh_failed = on_refresh_failed
        self.on_reauth_required = on_reauth_required
        self.alert_manager = alert_manager or get_alert_manager()

        self._tokens: Dict[Platform, _TrackedToken] = {}
        self._refresh_in_progress: Set[Platform] = set()
        self._refresh_tasks: Set[asyncio.Task] = set()
        self._running = False
        self._background_task: Optional[asyncio.Task] = None

        self.stats = {
            "ticks_completed": 0,
            "refreshes_started": 0,
            "refreshes_succeeded": 0,
            "refreshes_failed": 0,
            "expired_notifications": 0,
            "last_tick_time": None,
        }

    @classmethod
    def from_settings(
        cls, settings: Settings, refresh_executor: RefreshExecutor, **kwargs: Any
    ) -> "TokenRefreshCoordinator":
        """Build a coordinator with intervals and thresholds from Settings."""
        classifier = TokenHealthClassifier(
            critical_threshold_seconds=settings.token_critical_threshold_seconds,
            warning_threshold_seconds=settings.token_warning_threshold_seconds,
        )
        return cls(
            refresh_executor,
            classifier=classifier,
            interval_seconds=settings.token_health_check_interval_seconds,
            refresh_timeout_seconds=settings.oauth_external_timeout_seconds,
            max_refresh_attempts=settings.oauth_max_failure_count,
            **kwargs,
        )

    # ===== Tracking =====

    def track(self, record: TokenRecord) -> None:
        """Start monitoring a record, replacing any record for the same platform."""
        self._tokens[record.platform] = _TrackedToken(record=record)
        logger.info(
            "Tracking platform token",
            platform=record.platform.value,
            has_refresh_token=bool(record.refresh_token),
        )

    def untrack(self, platform: Platform) -> Optional[TokenRecord]:
        """Stop monitoring a platform and return its record, if any."""
        platform = Platform.parse(platform)
        entry = self._tokens.pop(platform, None)
        if entry is None:
            return None
        logger.info("Stopped tracking platform token", platform=platform.value)
        return entry.record

    def get_record(self, platform: Platform) -> Optional[TokenRecord]:
        entry = self._tokens.get(Platform.parse(platform))
        return entry.record if entry else None

    def tracked_platforms(self) -> List[Platform]:
        return list(self._tokens)

    def is_refreshing(self, platform: Platform) -> bool:
        """True while a refresh for the platform is in flight."""
        return Platform.parse(platform) in self._refresh_in_progress

    def needs_reauthorization(self, platform: Platform) -> bool:
        entry = self._tokens.get(Platform.parse(platform))
        return bool(entry and entry.reauth_required)

    def last_refresh_error(self, platform: Platform) -> Optional[str]:
        entry = self._tokens.get(Platform.parse(platform))
        return entry.last_error if entry else None

    def get_health(
        self, platform: Platform, now: Optional[datetime] = None
    ) -> Optional[TokenHealth]:
        """Classify one tracked platform without scheduling anything."""
        platform = Platform.parse(platform)
        entry = self._tokens.get(platform)
        if entry is None:
            return None
        return self._health_for(platform, entry, now)

    def get_all_health(
        self, now: Optional[datetime] = None
    ) -> Dict[Platform, TokenHealth]:
        return {
            platform: self._health_for(platform, entry, now)
            for platform, entry in self._tokens.items()
        }

    def _health_for(
        self, platform: Platform, entry: _TrackedToken, now: Optional[datetime]
    ) -> TokenHealth:
        health = self.classifier.classify(
            entry.record, now, refresh_attempts=entry.refresh_attempts
        )
        if platform in self._refresh_in_progress:
            return _as_refreshing(health)
        return health

    # ===== Tick =====

    async def tick(self, now: Optional[datetime] = None) -> Dict[Platform, TokenHealth]:
        """
        Classify every tracked record and start refreshes where needed.

        In-flight markers are set before the first await, so overlapping
        ticks cannot start a second refresh for the same platform.

        Returns:
            Health per platform as observed by this tick
        """
        now = now or datetime.now(timezone.utc)
        results: Dict[Platform, TokenHealth] = {}
        newly_expired: List[Platform] = []

        for platform, entry in list(self._tokens.items()):
            health = self.classifier.classify(
                entry.record, now, refresh_attempts=entry.refresh_attempts
            )

            if (
                health.status == HealthStatus.EXPIRED
                and entry.last_status != HealthStatus.EXPIRED
            ):
                newly_expired.append(platform)
            entry.last_status = health.status

            if platform in self._refresh_in_progress:
                results[platform] = _as_refreshing(health)
                continue

            if (
                health.status in _REFRESHABLE
                and entry.record.refresh_token
                and not entry.reauth_required
            ):
                self._refresh_in_progress.add(platform)
                self.stats["refreshes_started"] += 1
                task = asyncio.create_task(self._refresh_platform(platform, entry))
                self._refresh_tasks.add(task)
                task.add_done_callback(self._refresh_tasks.discard)
                results[platform] = _as_refreshing(health)
                continue

            results[platform] = health

        self.stats["ticks_completed"] += 1
        self.stats["last_tick_time"] = now.isoformat()

        for platform in newly_expired:
            self.stats["expired_notifications"] += 1
            logger.warning("Platform token expired", platform=platform.value)
            self.alert_manager.alert_token_expired(platform.value)
            await self._notify(self.on_expired, platform)

        return results

    async def refresh_now(self, platform: Platform) -> Optional[TokenHealth]:
        """
        Refresh one platform immediately, outside the tick schedule.

        A manual refresh is attempted even after automatic refresh gave up.
        When a refresh is already in flight no second one is started and the
        current (refreshing) health is returned.

        Returns:
            Health after the attempt, or None if the platform is not tracked

        Raises:
            RefreshFailed: If the record has no refresh token
        """
        platform = Platform.parse(platform)
        entry = self._tokens.get(platform)
        if entry is None:
            return None
        if platform in self._refresh_in_progress:
            return self._health_for(platform, entry, None)
        if not entry.record.refresh_token:
            raise RefreshFailed("No refresh token available", terminal=True)

        logger.info("Manual token refresh requested", platform=platform.value)
        entry.reauth_required = False
        self._refresh_in_progress.add(platform)
        self.stats["refreshes_started"] += 1
        await self._refresh_platform(platform, entry)
        return self.get_health(platform)

    async def _refresh_platform(self, platform: Platform, entry: _TrackedToken) -> None:
        """Run one refresh; the in-flight marker is always cleared."""
        try:
            try:
                refreshed = await asyncio.wait_for(
                    self.refresh_executor.refresh(entry.record),
                    timeout=self.refresh_timeout_seconds,
                )
            except asyncio.TimeoutError:
                await self._handle_failure(
                    platform, entry, RefreshFailed("Token refresh timed out")
                )
                return
            except RefreshFailed as e:
                await self._handle_failure(platform, entry, e)
                return
            except Exception as e:
                logger.error(
                    "Unexpected error during token refresh",
                    platform=platform.value,
                    error=str(e),
                )
                await self._handle_failure(platform, entry, RefreshFailed(str(e)))
                return

            if self._tokens.get(platform) is not entry:
                logger.info(
                    "Discarding refresh result for untracked platform",
                    platform=platform.value,
                )
                return

            entry.record.apply_refresh(refreshed)
            entry.refresh_attempts = 0
            entry.last_error = None
            entry.last_status = HealthStatus.HEALTHY
            self.stats["refreshes_succeeded"] += 1
            logger.info(
                "Token refresh successful",
                platform=platform.value,
                expires_at=(
                    entry.record.expires_at.isoformat()
                    if entry.record.expires_at
                    else None
                ),
            )
        finally:
            self._refresh_in_progress.discard(platform)

    async def _handle_failure(
        self, platform: Platform, entry: _TrackedToken, error: RefreshFailed
    ) -> None:
        entry.refresh_attempts += 1
        entry.last_error = error.message
        self.stats["refreshes_failed"] += 1

        give_up = error.terminal or (
            self.max_refresh_attempts is not None
            and entry.refresh_attempts >= self.max_refresh_attempts
        )

        logger.warning(
            "Token refresh failed",
            platform=platform.value,
            error=error.message,
            terminal=error.terminal,
            refresh_attempts=entry.refresh_attempts,
        )
        self.alert_manager.alert_token_refresh_failure(
            platform=platform.value,
            failure_count=entry.refresh_attempts,
            error_message=error.message,
            is_terminal=give_up,
        )
        await self._notify(self.on_refresh_failed, platform, error)

        if give_up and not entry.reauth_required:
            entry.reauth_required = True
            logger.error(
                "Automatic refresh stopped, re-authorization required",
                platform=platform.value,
                refresh_attempts=entry.refresh_attempts,
            )
            await self._notify(self.on_reauth_required, platform)

    async def _notify(self, callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "Token coordinator callback failed",
                callback=getattr(callback, "__name__", repr(callback)),
                error=str(e),
            )

    async def wait_for_refreshes(self) -> None:
        """Wait until every refresh started so far has settled."""
        while self._refresh_tasks:
            await asyncio.gather(*list(self._refresh_tasks), return_exceptions=True)

    # ===== Background loop =====

    async def start(self) -> None:
        """Start the periodic tick loop."""
        if self._running:
            logger.warning("Token refresh coordinator already running")
            return

        self._running = True
        self._background_task = asyncio.create_task(self._background_loop())
        logger.info(
            "Token refresh coordinator started",
            interval_seconds=self.interval_seconds,
            max_refresh_attempts=self.max_refresh_attempts,
        )

    async def stop(self) -> None:
        """Stop the tick loop and let in-flight refreshes settle."""
        if not self._running:
            return

        self._running = False
        if self._background_task:
            self._background_task.cancel()
            try:
                await self._background_task
            except asyncio.CancelledError:
                pass
            self._background_task = None

        await self.wait_for_refreshes()
        logger.info("Token refresh coordinator stopped")

    async def _background_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error("Token health tick failed", error=str(e))
            await asyncio.sleep(self.interval_seconds)

    def get_service_stats(self) -> Dict[str, Any]:
        """Coordinator statistics for the health endpoint."""
        return {
            **self.stats,
            "is_running": self._running,
            "tracked_platforms": [p.value for p in self._tokens],
            "refreshes_in_progress": sorted(p.value for p in self._refresh_in_progress),
            "config": {
                "interval_seconds": self.interval_seconds,
                "refresh_timeout_seconds": self.refresh_timeout_seconds,
                "max_refresh_attempts": self.max_refresh_attempts,
            },
        }


def _as_refreshing(health: TokenHealth) -> TokenHealth:
    return replace(health, status=HealthStatus.REFRESHING, message="Refreshing token")
