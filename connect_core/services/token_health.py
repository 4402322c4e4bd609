"""
Token health classification.

Maps a TokenRecord to a TokenHealth: a status band, a human readable message
and the remaining lifetime. Classification is pure; nothing here is stored,
so health is always computed fresh from the record it describes.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from connect_core.platforms import PLATFORM_REGISTRY, Platform

DEFAULT_CRITICAL_THRESHOLD_SECONDS = 300
DEFAULT_WARNING_THRESHOLD_SECONDS = 3600
SECONDS_PER_DAY = 86400


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    EXPIRED = "expired"
    REFRESHING = "refreshing"


@dataclass
class TokenRecord:
    """
    Credential set issued for one platform connection.

    Updated in place when a refresh succeeds. ``expires_at`` of None means
    the token does not expire.
    """

    platform: Platform
    access_token: Optional[str]
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    issued_at: Optional[datetime] = None
    scopes: Tuple[str, ...] = ()
    token_type: str = "Bearer"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def apply_refresh(self, refreshed: "TokenRecord") -> None:
        """Copy the result of a refresh into this record."""
        self.access_token = refreshed.access_token
        self.expires_at = refreshed.expires_at
        self.issued_at = refreshed.issued_at or self.issued_at
        # Providers that do not rotate refresh tokens omit them from the response
        if refreshed.refresh_token:
            self.refresh_token = refreshed.refresh_token
        if refreshed.scopes:
            self.scopes = refreshed.scopes
        if refreshed.token_type:
            self.token_type = refreshed.token_type
        self.metadata.update(refreshed.metadata)

    def to_public_dict(self) -> Dict[str, Any]:
        """Serializable view without token material."""
        return {
            "platform": self.platform.value,
            "hasAccessToken": bool(self.access_token),
            "hasRefreshToken": bool(self.refresh_token),
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "issuedAt": self.issued_at.isoformat() if self.issued_at else None,
            "scopes": list(self.scopes),
            "tokenType": self.token_type,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class TokenHealthDetails:
    has_access_token: bool
    has_refresh_token: bool
    is_expired: bool
    can_refresh: bool
    scopes_valid: bool


@dataclass(frozen=True)
class TokenHealth:
    platform: Platform
    status: HealthStatus
    message: str
    checked_at: datetime
    details: TokenHealthDetails
    expires_in_seconds: Optional[int] = None
    refresh_attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform.value,
            "status": self.status.value,
            "message": self.message,
            "expiresIn": self.expires_in_seconds,
            "lastChecked": self.checked_at.isoformat(),
            "refreshAttempts": self.refresh_attempts,
            "details": {
                "hasAccessToken": self.details.has_access_token,
                "hasRefreshToken": self.details.has_refresh_token,
                "isExpired": self.details.is_expired,
                "canRefresh": self.details.can_refresh,
                "scopesValid": self.details.scopes_valid,
            },
        }


def _describe_remaining(seconds: int) -> str:
    if seconds < 3600:
        return f"Token expires in {seconds // 60} minutes"
    if seconds < SECONDS_PER_DAY:
        return f"Token expires in {seconds // 3600} hours"
    return f"Token expires in {seconds // SECONDS_PER_DAY} days"


class TokenHealthClassifier:
    """
    Classifies token records into health bands.

    Evaluation order:
    1. Missing access token -> critical (overrides everything)
    2. Expiry reached -> expired
    3. Remaining lifetime below the critical threshold -> critical,
       below the warning threshold -> warning, otherwise healthy
    4. Missing scopes (for platforms that require them) downgrade healthy
       to warning; they never upgrade a worse status

    Args:
        critical_threshold_seconds: Remaining lifetime below which a token is critical
        warning_threshold_seconds: Remaining lifetime below which a token is in warning
    """

    def __init__(
        self,
        critical_threshold_seconds: int = DEFAULT_CRITICAL_THRESHOLD_SECONDS,
        warning_threshold_seconds: int = DEFAULT_WARNING_THRESHOLD_SECONDS,
    ):
        if warning_threshold_seconds <= critical_threshold_seconds:
            raise ValueError("warning threshold must be above critical threshold")
        self.critical_threshold_seconds = critical_threshold_seconds
        self.warning_threshold_seconds = warning_threshold_seconds

    def classify(
        self,
        record: TokenRecord,
        now: Optional[datetime] = None,
        refresh_attempts: int = 0,
    ) -> TokenHealth:
        """
        Compute the health of a token record.

        Args:
            record: Token record to classify
            now: Reference time (defaults to the current UTC time)
            refresh_attempts: Consecutive failed refreshes, copied into the result

        Returns:
            TokenHealth for the record
        """
        now = now or datetime.now(timezone.utc)

        expires_in: Optional[int] = None
        if record.expires_at is not None:
            expires_in = math.floor((record.expires_at - now).total_seconds())

        config = PLATFORM_REGISTRY.get(record.platform)
        requires_scopes = config.requires_scopes if config else False
        details = TokenHealthDetails(
            has_access_token=bool(record.access_token),
            has_refresh_token=bool(record.refresh_token),
            is_expired=expires_in is not None and expires_in <= 0,
            can_refresh=bool(record.refresh_token),
            scopes_valid=bool(record.scopes) or not requires_scopes,
        )

        if not details.has_access_token:
            status, message = HealthStatus.CRITICAL, "Missing access token"
        elif details.is_expired:
            status, message = HealthStatus.EXPIRED, "Token has expired"
        elif expires_in is None:
            status, message = HealthStatus.HEALTHY, "Token is valid and healthy"
        elif expires_in < self.critical_threshold_seconds:
            status = HealthStatus.CRITICAL
            message = f"Token expires in {expires_in // 60} minutes"
        elif expires_in < self.warning_threshold_seconds:
            status = HealthStatus.WARNING
            message = f"Token expires in {expires_in // 60} minutes"
        else:
            status, message = HealthStatus.HEALTHY, _describe_remaining(expires_in)

        if status == HealthStatus.HEALTHY and not details.scopes_valid:
            status, message = HealthStatus.WARNING, "Invalid or missing scopes"

        return TokenHealth(
            platform=record.platform,
            status=status,
            message=message,
            checked_at=now,
            details=details,
            expires_in_seconds=expires_in,
            refresh_attempts=refresh_attempts,
        )


def classify(record: TokenRecord, now: Optional[datetime] = None) -> TokenHealth:
    """Classify with the default thresholds."""
    return _default_classifier.classify(record, now)


_default_classifier = TokenHealthClassifier()
