"""
Authorization state service.

Issues, stores and validates the one-time ``state`` / PKCE ``code_verifier``
pairs that protect a platform authorization attempt.

Lifecycle of an attempt:
1. begin_authorization - generate state (and verifier), store with TTL
2. validate_authorization - take the attempt out of the store exactly once,
   then check that it was issued for the calling platform
3. clear_authorization - drop every pending attempt of a platform (cancel/retry)

Expected rejections (unknown, expired, replayed or cross-platform state) are
returned as a ValidationResult, never raised. A rejected attempt is consumed
just like an accepted one.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

import structlog

from connect_core.platforms import Platform
from connect_core.services.pkce import PKCEGenerator
from connect_core.services.state_store import (
    DEFAULT_STATE_TTL_SECONDS,
    NOT_FOUND,
    StateStore,
)
from connect_core.utils.crypto import CryptoService, DecryptionError
from connect_core.utils.logging import truncate_state

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuthorizationAttempt:
    """A pending authorization attempt as held in the state store."""

    state: str
    platform: Platform
    created_at: datetime
    code_verifier: Optional[str] = None
    redirect_uri: Optional[str] = None
    verifier_encrypted: bool = False


@dataclass(frozen=True)
class AuthorizationGrant:
    """What the caller receives when an attempt begins."""

    state: str
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


class RejectionReason(str, Enum):
    NOT_FOUND_OR_EXPIRED = "not_found_or_expired"
    PLATFORM_MISMATCH = "platform_mismatch"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a callback state."""

    valid: bool
    code_verifier: Optional[str] = None
    redirect_uri: Optional[str] = None
    reason: Optional[RejectionReason] = None

    @classmethod
    def accepted(
        cls, code_verifier: Optional[str] = None, redirect_uri: Optional[str] = None
    ) -> "ValidationResult":
        return cls(valid=True, code_verifier=code_verifier, redirect_uri=redirect_uri)

    @classmethod
    def rejected(cls, reason: RejectionReason) -> "ValidationResult":
        return cls(valid=False, reason=reason)


class AuthorizationStateService:
    """
    Server-side manager of pending authorization attempts.

    Args:
        store: StateStore backend; attempts are keyed by their state token
        pkce: Generator for state tokens, verifiers and challenges
        ttl_seconds: Lifetime of an attempt
        crypto: Optional CryptoService; when set, verifiers are stored encrypted
        clock: Returns the current UTC datetime (attempt timestamps only;
            expiry is enforced by the store)
    """

    def __init__(
        self,
        store: StateStore,
        pkce: Optional[PKCEGenerator] = None,
        ttl_seconds: float = DEFAULT_STATE_TTL_SECONDS,
        crypto: Optional[CryptoService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.pkce = pkce or PKCEGenerator()
        self.ttl_seconds = ttl_seconds
        self.crypto = crypto
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def begin_authorization(
        self,
        platform: Platform,
        use_pkce: bool = False,
        redirect_uri: Optional[str] = None,
    ) -> AuthorizationGrant:
        """
        Start a new authorization attempt.

        Args:
            platform: Platform member or identifier
            use_pkce: Generate a code verifier and return its S256 challenge
            redirect_uri: Callback URI to hand back on validation

        Returns:
            AuthorizationGrant with the state token and optional challenge

        Raises:
            UnknownPlatformError: If the platform is not supported
        """
        platform = Platform.parse(platform)
        await self.store.sweep()

        state = self.pkce.new_state()
        code_verifier = self.pkce.new_code_verifier() if use_pkce else None
        code_challenge = (
            self.pkce.challenge_for(code_verifier) if code_verifier else None
        )

        stored_verifier = code_verifier
        if code_verifier and self.crypto is not None:
            stored_verifier = self.crypto.encrypt_value(code_verifier)

        attempt = AuthorizationAttempt(
            state=state,
            platform=platform,
            created_at=self._clock(),
            code_verifier=stored_verifier,
            redirect_uri=redirect_uri,
            verifier_encrypted=bool(code_verifier and self.crypto is not None),
        )
        await self.store.put(state, attempt, ttl_seconds=self.ttl_seconds)

        logger.info(
            "Authorization attempt created",
            platform=platform.value,
            state=truncate_state(state),
            pkce=use_pkce,
            ttl_seconds=self.ttl_seconds,
        )

        return AuthorizationGrant(
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=self.pkce.method if code_challenge else None,
        )

    async def validate_authorization(
        self, state: str, platform: Platform
    ) -> ValidationResult:
        """
        Validate and consume the attempt identified by ``state``.

        The attempt is removed from the store before the platform is compared,
        so a cross-platform replay burns it.

        Args:
            state: State token from the provider callback
            platform: Platform the callback claims to belong to

        Returns:
            ValidationResult with the code verifier and redirect URI on
            success, or the rejection reason

        Raises:
            UnknownPlatformError: If the platform is not supported
        """
        platform = Platform.parse(platform)
        await self.store.sweep()

        attempt = await self.store.take_once(state)
        if attempt is NOT_FOUND:
            logger.warning(
                "Authorization state not found or expired",
                state=truncate_state(state),
                platform=platform.value,
            )
            return ValidationResult.rejected(RejectionReason.NOT_FOUND_OR_EXPIRED)

        if attempt.platform != platform:
            logger.warning(
                "Authorization state platform mismatch",
                state=truncate_state(state),
                expected_platform=attempt.platform.value,
                actual_platform=platform.value,
            )
            return ValidationResult.rejected(RejectionReason.PLATFORM_MISMATCH)

        code_verifier = attempt.code_verifier
        if code_verifier and attempt.verifier_encrypted:
            if self.crypto is None:
                logger.error(
                    "Encrypted code verifier but no crypto service configured",
                    state=truncate_state(state),
                )
                return ValidationResult.rejected(RejectionReason.NOT_FOUND_OR_EXPIRED)
            try:
                code_verifier = self.crypto.decrypt_value(code_verifier)
            except DecryptionError as e:
                logger.error(
                    "Failed to decrypt code verifier",
                    state=truncate_state(state),
                    error=str(e),
                )
                return ValidationResult.rejected(RejectionReason.NOT_FOUND_OR_EXPIRED)

        logger.info(
            "Authorization state validated and consumed",
            state=truncate_state(state),
            platform=platform.value,
        )
        return ValidationResult.accepted(
            code_verifier=code_verifier, redirect_uri=attempt.redirect_uri
        )

    async def clear_authorization(self, platform: Platform) -> int:
        """
        Remove every pending attempt for a platform.

        Returns:
            Number of attempts removed

        Raises:
            UnknownPlatformError: If the platform is not supported
        """
        platform = Platform.parse(platform)
        await self.store.sweep()

        removed = await self.store.delete_where(
            lambda _key, attempt: attempt.platform == platform
        )
        logger.info(
            "Authorization attempts cleared", platform=platform.value, removed=removed
        )
        return removed
