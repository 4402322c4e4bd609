"""
Error taxonomy for platform connection flows.

Expected rejections (unknown state, platform mismatch) are returned as tagged
results by the state service; the exceptions below cover the failures that
cross a component boundary. Every flow error carries a stable ``kind`` string
so the dashboard can render a precise message instead of a generic failure.
"""

from typing import Optional


class ConnectCoreError(Exception):
    """Base exception for connect-core operations."""

    pass


class UnknownPlatformError(ConnectCoreError, ValueError):
    """Raised when a platform identifier is not in the supported set."""

    def __init__(self, platform: Optional[str]):
        self.platform = platform
        super().__init__(f"Unsupported platform: {platform!r}")


class StateStoreUnavailable(ConnectCoreError):
    """Raised when the backing state store cannot be reached."""

    pass


class StateServiceUnavailable(ConnectCoreError):
    """Raised by state clients when the authorization state service fails."""

    pass


class InvalidFlowStep(ConnectCoreError):
    """Raised when a flow action is not allowed in the current step."""

    pass


class FlowError(ConnectCoreError):
    """Base class for errors surfaced into the authorization flow."""

    kind = "flow_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class InitiateFailed(FlowError):
    """A new authorization attempt could not be started."""

    kind = "initiate_failed"


class WindowClosed(FlowError):
    """The authorization window closed before the provider redirected back."""

    kind = "window_closed"


class ValidationExpired(FlowError):
    """State token missing, expired, or already consumed."""

    kind = "validation_expired"


class ValidationUnavailable(FlowError):
    """The state service could not be reached to validate a callback."""

    kind = "validation_unavailable"


class PlatformMismatch(FlowError):
    """State token was issued for a different platform."""

    kind = "platform_mismatch"


class MissingParameters(FlowError):
    """Callback arrived without a code or state."""

    kind = "missing_parameters"


class ProviderDenied(FlowError):
    """The provider returned an ``error`` parameter on the callback."""

    kind = "provider_denied"


class ExchangeFailed(FlowError):
    """Network or provider error while exchanging the code for tokens."""

    kind = "exchange_failed"


class RefreshFailed(FlowError):
    """Network or provider error while refreshing an access token."""

    kind = "refresh_failed"

    def __init__(self, message: str = "", terminal: bool = False):
        super().__init__(message)
        # invalid_grant and friends: refresh token is dead, re-auth required
        self.terminal = terminal


class RevocationFailed(FlowError):
    """Network or provider error while revoking a refresh token."""

    kind = "revocation_failed"
