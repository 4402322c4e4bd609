"""
Alerting utilities for platform connection monitoring.

Structured alerts for token refresh failures and expired connections. Alerts
are emitted through structlog so that log aggregation can route them; there
is no external paging integration.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertCategory(str, Enum):
    """Alert categories by component."""

    TOKEN_REFRESH = "token_refresh"
    TOKEN_EXPIRY = "token_expiry"


class Alert:
    """
    Structured alert with severity, category, and contextual information.
    """

    def __init__(
        self,
        title: str,
        description: str,
        severity: AlertSeverity,
        category: AlertCategory,
        platform: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ):
        self.title = title
        self.description = description
        self.severity = severity
        self.category = category
        self.platform = platform
        self.metadata = metadata or {}
        self.timestamp = timestamp or datetime.now(timezone.utc)
        self.alert_id = (
            f"{category.value}_{severity.value}_{int(self.timestamp.timestamp())}"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert alert to dictionary for JSON serialization."""
        return {
            "alert_id": self.alert_id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "category": self.category.value,
            "platform": self.platform,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


class AlertManager:
    """
    Emits structured alerts with per-platform rate limiting.

    Non-critical alerts of the same category for the same platform are
    limited to ``max_alerts_per_window`` within ``window_seconds``. Critical
    alerts are never suppressed.
    """

    def __init__(
        self,
        max_alerts_per_window: int = 3,
        window_seconds: int = 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.max_alerts_per_window = max_alerts_per_window
        self.window_seconds = window_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # rate limit key -> (window start, count)
        self._alert_counts: Dict[str, tuple] = {}
        self.sent_alerts = 0
        self.suppressed_alerts = 0

    @staticmethod
    def _rate_limit_key(alert: Alert) -> str:
        return f"{alert.category.value}_{alert.platform}"

    def should_alert(self, alert: Alert) -> bool:
        """
        Determine if an alert should be sent based on severity and rate limiting.

        Args:
            alert: Alert to evaluate

        Returns:
            True if alert should be sent
        """
        if alert.severity == AlertSeverity.CRITICAL:
            return True

        window_start, count = self._alert_counts.get(
            self._rate_limit_key(alert), (None, 0)
        )
        if window_start is None:
            return True
        if (self._clock() - window_start).total_seconds() >= self.window_seconds:
            return True
        return count < self.max_alerts_per_window

    def send_alert(self, alert: Alert) -> bool:
        """
        Emit an alert unless it is rate limited.

        Returns:
            True if the alert was emitted
        """
        if not self.should_alert(alert):
            self.suppressed_alerts += 1
            logger.debug(
                "Alert suppressed due to rate limiting",
                alert_id=alert.alert_id,
                category=alert.category.value,
                platform=alert.platform,
            )
            return False

        logger.bind(
            alert_id=alert.alert_id,
            alert_severity=alert.severity.value,
            alert_category=alert.category.value,
            platform=alert.platform,
        ).warning(
            f"ALERT: {alert.title}",
            description=alert.description,
            metadata=alert.metadata,
        )

        key = self._rate_limit_key(alert)
        now = self._clock()
        window_start, count = self._alert_counts.get(key, (None, 0))
        if (
            window_start is None
            or (now - window_start).total_seconds() >= self.window_seconds
        ):
            self._alert_counts[key] = (now, 1)
        else:
            self._alert_counts[key] = (window_start, count + 1)

        self.sent_alerts += 1
        return True

    def alert_token_refresh_failure(
        self,
        platform: str,
        failure_count: int,
        error_message: str,
        is_terminal: bool = False,
    ) -> bool:
        """
        Create alert for a failed token refresh.

        Args:
            platform: Platform whose token failed to refresh
            failure_count: Number of consecutive failures
            error_message: Error details from the refresh attempt
            is_terminal: Whether the user has to re-authorize the platform
        """
        if is_terminal or failure_count >= 5:
            severity = AlertSeverity.CRITICAL
        elif failure_count >= 3:
            severity = AlertSeverity.HIGH
        else:
            severity = AlertSeverity.MEDIUM

        alert = Alert(
            title=f"Token Refresh Failure (x{failure_count})",
            description=(
                f"Token refresh failed {failure_count} consecutive times for {platform}. "
                f"Error: {error_message}. "
                f"{'Requires re-authorization.' if is_terminal else 'Automatic retry will continue.'}"
            ),
            severity=severity,
            category=AlertCategory.TOKEN_REFRESH,
            platform=platform,
            metadata={
                "failure_count": failure_count,
                "error_message": error_message,
                "is_terminal": is_terminal,
            },
        )
        return self.send_alert(alert)

    def alert_token_expired(self, platform: str) -> bool:
        """Create alert for a connection whose token has expired."""
        alert = Alert(
            title="Platform Token Expired",
            description=(
                f"The access token for {platform} has expired. "
                "The connection is unusable until it is refreshed or re-authorized."
            ),
            severity=AlertSeverity.HIGH,
            category=AlertCategory.TOKEN_EXPIRY,
            platform=platform,
        )
        return self.send_alert(alert)

    def get_stats(self) -> Dict[str, int]:
        return {
            "sent_alerts": self.sent_alerts,
            "suppressed_alerts": self.suppressed_alerts,
        }


# Global alert manager instance
_alert_manager: Optional[AlertManager] = None


def get_alert_manager() -> AlertManager:
    """Get the global alert manager instance."""
    global _alert_manager
    if _alert_manager is None:
        _alert_manager = AlertManager()
    return _alert_manager


def reset_alert_manager() -> None:
    """Reset alert manager (useful for testing)."""
    global _alert_manager
    _alert_manager = None
