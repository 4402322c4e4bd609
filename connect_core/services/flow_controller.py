"""
Authorization flow controller.

Drives one platform connection through the authorization-code flow:

    initiate -> authorize -> callback -> complete

FlowState is an immutable value. Every change goes through ``transition()``,
a pure reducer over (state, event); the controller performs the side effects
(state service calls, window handling, token exchange, revocation) and feeds
their outcomes back in as events.

Failures never raise out of the controller's actions. They land in
``FlowState.error`` as a FlowErrorInfo with a stable ``kind``:

- initiate_failed: no attempt could be started (stays in initiate)
- window_closed: the authorization window closed without a callback
  (stays in authorize)
- provider_denied / missing_parameters / validation_expired /
  platform_mismatch / validation_unavailable / exchange_failed: callback
  problems (moves to callback)
- revocation_failed: revoke did not go through (stays in complete)

Only calling an action from a step that does not allow it raises
InvalidFlowStep.

Starting an action supersedes any action still awaiting the state service
or the provider: when the older one resumes, its outcome is dropped, so a
cancelled flow never completes and never hands tokens to the coordinator.
"""

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Union

import structlog

from connect_core.clients.authorization_window import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    AuthorizationWindow,
    BrowserWindowOpener,
    WindowMonitor,
    WindowOpener,
)
from connect_core.clients.state_client import AuthorizationStateClient
from connect_core.config import Settings
from connect_core.errors import (
    ConnectCoreError,
    ExchangeFailed,
    FlowError,
    InitiateFailed,
    InvalidFlowStep,
    MissingParameters,
    PlatformMismatch,
    ProviderDenied,
    RevocationFailed,
    ValidationExpired,
    ValidationUnavailable,
    WindowClosed,
)
from connect_core.platforms import (
    Platform,
    PlatformConfig,
    build_authorization_url,
    get_platform_config,
)
from connect_core.services.authorization_state import RejectionReason
from connect_core.services.oauth_executors import (
    HttpRevocationExecutor,
    HttpTokenExchanger,
    RevocationExecutor,
    TokenExchanger,
)
from connect_core.services.token_health import TokenRecord
from connect_core.services.token_refresh_coordinator import TokenRefreshCoordinator
from connect_core.utils.logging import truncate_state

logger = structlog.get_logger(__name__)

DEFAULT_EXTERNAL_TIMEOUT_SECONDS = 10.0


class FlowStep(str, Enum):
    INITIATE = "initiate"
    AUTHORIZE = "authorize"
    CALLBACK = "callback"
    COMPLETE = "complete"


@dataclass(frozen=True)
class FlowErrorInfo:
    kind: str
    message: str

    @classmethod
    def from_error(cls, error: FlowError) -> "FlowErrorInfo":
        return cls(kind=error.kind, message=error.message)


@dataclass(frozen=True)
class FlowState:
    step: FlowStep = FlowStep.INITIATE
    auth_url: Optional[str] = None
    state: Optional[str] = None
    code: Optional[str] = None
    error: Optional[FlowErrorInfo] = None
    token_record: Optional[TokenRecord] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


# ===== Events =====


@dataclass(frozen=True)
class InitiateSucceeded:
    auth_url: str
    state: str


@dataclass(frozen=True)
class InitiateFailedEvent:
    error: FlowErrorInfo


@dataclass(frozen=True)
class WindowClosedEvent:
    pass


@dataclass(frozen=True)
class CallbackReceived:
    code: Optional[str]
    state: Optional[str]
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallbackFailed:
    error: FlowErrorInfo


@dataclass(frozen=True)
class ExchangeSucceeded:
    token_record: TokenRecord
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RevokeFailed:
    error: FlowErrorInfo


@dataclass(frozen=True)
class Reset:
    pass


FlowEvent = Union[
    InitiateSucceeded,
    InitiateFailedEvent,
    WindowClosedEvent,
    CallbackReceived,
    CallbackFailed,
    ExchangeSucceeded,
    RevokeFailed,
    Reset,
]

_INITIATE_FROM = (FlowStep.INITIATE, FlowStep.AUTHORIZE, FlowStep.CALLBACK)
_CALLBACK_FROM = (FlowStep.AUTHORIZE, FlowStep.CALLBACK)


def transition(current: FlowState, event: FlowEvent) -> FlowState:
    """
    Pure state machine for the authorization flow.

    Raises:
        InvalidFlowStep: If the event is not allowed in the current step.
            A window closing outside ``authorize`` is stale and ignored.
    """
    if isinstance(event, Reset):
        return FlowState()

    if isinstance(event, InitiateSucceeded):
        _require(current, event, _INITIATE_FROM)
        return FlowState(
            step=FlowStep.AUTHORIZE, auth_url=event.auth_url, state=event.state
        )

    if isinstance(event, InitiateFailedEvent):
        _require(current, event, _INITIATE_FROM)
        return FlowState(step=FlowStep.INITIATE, error=event.error)

    if isinstance(event, WindowClosedEvent):
        if current.step != FlowStep.AUTHORIZE:
            return current
        return replace(
            current,
            error=FlowErrorInfo.from_error(WindowClosed("window closed")),
        )

    if isinstance(event, CallbackReceived):
        _require(current, event, _CALLBACK_FROM)
        return replace(
            current,
            step=FlowStep.CALLBACK,
            code=event.code,
            state=event.state or current.state,
            error=None,
            metadata=dict(event.metadata),
        )

    if isinstance(event, CallbackFailed):
        _require(current, event, _CALLBACK_FROM)
        return replace(current, step=FlowStep.CALLBACK, error=event.error)

    if isinstance(event, ExchangeSucceeded):
        _require(current, event, (FlowStep.CALLBACK,))
        return replace(
            current,
            step=FlowStep.COMPLETE,
            error=None,
            token_record=event.token_record,
            metadata={**current.metadata, **event.metadata},
        )

    if isinstance(event, RevokeFailed):
        _require(current, event, (FlowStep.COMPLETE,))
        return replace(current, error=event.error)

    raise TypeError(f"Unknown flow event: {event!r}")


def _require(current: FlowState, event: FlowEvent, allowed: tuple) -> None:
    if current.step not in allowed:
        raise InvalidFlowStep(
            f"{type(event).__name__} is not allowed in step {current.step.value}"
        )


class OAuthFlowController:
    """
    Client-side controller for connecting one platform.

    Args:
        platform: Platform being connected
        state_client: Access to the authorization state service
        token_exchanger: Exchanges the authorization code for tokens
        window_opener: Opens the provider authorization window
        revocation_executor: Revokes tokens on disconnect
        coordinator: Receives the token record once the flow completes
        settings: Source of client credentials and redirect URIs
        use_pkce: Request PKCE when the platform supports it
        redirect_uri: Callback override for this flow
        external_timeout_seconds: Timeout for every state service and token call
        poll_interval_seconds: Window monitor polling interval
        on_change: Called with each new FlowState
    """

    def __init__(
        self,
        platform: Platform,
        state_client: AuthorizationStateClient,
        token_exchanger: TokenExchanger,
        window_opener: WindowOpener,
        revocation_executor: Optional[RevocationExecutor] = None,
        coordinator: Optional[TokenRefreshCoordinator] = None,
        settings: Optional[Settings] = None,
        use_pkce: bool = True,
        redirect_uri: Optional[str] = None,
        external_timeout_seconds: float = DEFAULT_EXTERNAL_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        on_change: Optional[Callable[[FlowState], None]] = None,
    ):
        self.platform = Platform.parse(platform)
        self.config: PlatformConfig = get_platform_config(self.platform, settings)
        self.state_client = state_client
        self.token_exchanger = token_exchanger
        self.window_opener = window_opener
        self.revocation_executor = revocation_executor
        self.coordinator = coordinator
        self.use_pkce = use_pkce and self.config.supports_pkce
        self.redirect_uri = redirect_uri or self.config.redirect_uri
        self.external_timeout_seconds = external_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.on_change = on_change

        self._state = FlowState()
        self._window: Optional[AuthorizationWindow] = None
        self._monitor: Optional[WindowMonitor] = None
        # Bumped by every action; outcomes of an older action are dropped
        self._generation = 0

    @classmethod
    def from_settings(
        cls, platform: Platform, settings: Settings, **kwargs: Any
    ) -> "OAuthFlowController":
        """
        Build a controller from Settings.

        HTTP token executors and the system browser are used unless other
        collaborators are passed in; ``state_client`` is always required.
        """
        if "token_exchanger" not in kwargs:
            kwargs["token_exchanger"] = HttpTokenExchanger(settings)
        if "revocation_executor" not in kwargs:
            kwargs["revocation_executor"] = HttpRevocationExecutor(settings)
        if "window_opener" not in kwargs:
            kwargs["window_opener"] = BrowserWindowOpener()
        kwargs.setdefault("use_pkce", settings.oauth_use_pkce)
        kwargs.setdefault(
            "external_timeout_seconds", settings.oauth_external_timeout_seconds
        )
        kwargs.setdefault(
            "poll_interval_seconds", settings.oauth_window_poll_interval_seconds
        )
        return cls(platform, settings=settings, **kwargs)

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def monitoring(self) -> bool:
        return self._monitor is not None and self._monitor.active

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _superseded(self, generation: Optional[int], event: FlowEvent) -> bool:
        if generation is None or generation == self._generation:
            return False
        logger.info(
            "Discarding outcome of superseded flow action",
            platform=self.platform.value,
            flow_event=type(event).__name__,
            step=self._state.step.value,
        )
        return True

    def _dispatch(
        self, event: FlowEvent, generation: Optional[int] = None
    ) -> FlowState:
        """
        Apply an event to the current state.

        Args:
            event: Outcome to apply
            generation: Action the outcome belongs to; when another action
                has started since, the outcome is dropped and the state is
                returned unchanged
        """
        if self._superseded(generation, event):
            return self._state

        previous = self._state
        self._state = transition(previous, event)
        left_authorize = (
            previous.step == FlowStep.AUTHORIZE
            and self._state.step != FlowStep.AUTHORIZE
        )
        if left_authorize:
            self._dispose_monitor()
        if self._state is not previous:
            logger.debug(
                "Flow transition",
                platform=self.platform.value,
                flow_event=type(event).__name__,
                from_step=previous.step.value,
                to_step=self._state.step.value,
                error_kind=self._state.error.kind if self._state.error else None,
            )
            if self.on_change is not None:
                self.on_change(self._state)
        return self._state

    async def _call(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.external_timeout_seconds)

    # ===== Actions =====

    async def initiate(self) -> FlowState:
        """
        Start (or restart) an authorization attempt and open the window.

        Restarting from ``authorize`` or ``callback`` clears the previous
        attempt on the server first.
        """
        current = self._state
        if current.step not in _INITIATE_FROM:
            raise InvalidFlowStep(f"Cannot initiate from step {current.step.value}")

        generation = self._next_generation()
        self._dispose_monitor()
        self._close_window()
        if current.step != FlowStep.INITIATE and current.state:
            await self._clear_server_attempts()

        try:
            grant = await self._call(
                self.state_client.begin(
                    self.platform,
                    use_pkce=self.use_pkce,
                    redirect_uri=self.redirect_uri,
                )
            )
        except asyncio.TimeoutError:
            return self._fail_initiate(
                InitiateFailed("Timed out starting authorization"), generation
            )
        except ConnectCoreError as e:
            logger.warning(
                "Failed to start authorization",
                platform=self.platform.value,
                error=str(e),
            )
            return self._fail_initiate(InitiateFailed(str(e)), generation)

        auth_url = build_authorization_url(
            self.config,
            grant.state,
            redirect_uri=self.redirect_uri,
            code_challenge=grant.code_challenge,
            code_challenge_method=grant.code_challenge_method,
        )
        succeeded = InitiateSucceeded(auth_url=auth_url, state=grant.state)
        # The unused attempt expires on the server
        if self._superseded(generation, succeeded):
            return self._state

        try:
            window = self.window_opener.open(auth_url)
        except Exception as e:
            logger.error(
                "Failed to open authorization window",
                platform=self.platform.value,
                error=str(e),
            )
            await self._clear_server_attempts()
            return self._fail_initiate(
                InitiateFailed(f"Could not open authorization window: {e}"),
                generation,
            )

        self._window = window
        state = self._dispatch(succeeded)

        logger.info(
            "Authorization started",
            platform=self.platform.value,
            state=truncate_state(grant.state),
            pkce=bool(grant.code_challenge),
        )

        self._monitor = WindowMonitor(
            self._window,
            on_closed=self._on_window_closed,
            poll_interval_seconds=self.poll_interval_seconds,
        )
        self._monitor.start()
        return state

    def _on_window_closed(self) -> None:
        self._window = None
        self._dispose_monitor()
        if self._state.step == FlowStep.AUTHORIZE:
            logger.info(
                "Authorization window closed without callback",
                platform=self.platform.value,
            )
            self._dispatch(WindowClosedEvent())

    async def handle_callback(self, params: Mapping[str, Optional[str]]) -> FlowState:
        """
        Process the provider redirect parameters.

        Args:
            params: Callback query parameters (code, state, error,
                error_description and platform extras such as realmId)
        """
        if self._state.step not in _CALLBACK_FROM:
            raise InvalidFlowStep(
                f"Cannot handle a callback in step {self._state.step.value}"
            )

        generation = self._next_generation()
        self._dispose_monitor()
        self._close_window()

        error = params.get("error")
        if error:
            message = params.get("error_description") or error
            logger.warning(
                "Provider denied authorization",
                platform=self.platform.value,
                error=error,
            )
            return self._fail_callback(ProviderDenied(message))

        code = params.get("code")
        state = params.get("state")
        extras: Dict[str, str] = {
            key: params[key]
            for key in self.config.callback_extras
            if params.get(key)
        }
        if not code or not state:
            return self._fail_callback(
                MissingParameters("Missing authorization code or state")
            )

        self._dispatch(CallbackReceived(code=code, state=state, metadata=extras))

        try:
            result = await self._call(self.state_client.validate(state, self.platform))
        except asyncio.TimeoutError:
            return self._fail_callback(
                ValidationUnavailable("Timed out validating authorization state"),
                generation,
            )
        except ConnectCoreError as e:
            return self._fail_callback(ValidationUnavailable(str(e)), generation)

        if not result.valid:
            if result.reason == RejectionReason.PLATFORM_MISMATCH:
                return self._fail_callback(
                    PlatformMismatch("Platform mismatch"), generation
                )
            return self._fail_callback(
                ValidationExpired("Invalid or expired state"), generation
            )
        if generation != self._generation:
            logger.info(
                "Skipping token exchange for superseded callback",
                platform=self.platform.value,
            )
            return self._state

        try:
            record = await self._call(
                self.token_exchanger.exchange(
                    self.platform,
                    code,
                    code_verifier=result.code_verifier,
                    redirect_uri=result.redirect_uri or self.redirect_uri,
                    realm_context=extras or None,
                )
            )
        except asyncio.TimeoutError:
            return self._fail_callback(
                ExchangeFailed("Token exchange timed out"), generation
            )
        except ExchangeFailed as e:
            return self._fail_callback(e, generation)
        except Exception as e:
            logger.error(
                "Unexpected token exchange error",
                platform=self.platform.value,
                error=str(e),
            )
            return self._fail_callback(
                ExchangeFailed(f"Failed to exchange tokens: {e}"), generation
            )

        state = self._dispatch(
            ExchangeSucceeded(token_record=record, metadata=record.metadata),
            generation,
        )
        if state.token_record is not record:
            return state

        if self.coordinator is not None:
            self.coordinator.track(record)

        logger.info(
            "Platform connected",
            platform=self.platform.value,
            has_refresh_token=bool(record.refresh_token),
        )
        return state

    def _fail_initiate(
        self, error: FlowError, generation: Optional[int] = None
    ) -> FlowState:
        return self._dispatch(
            InitiateFailedEvent(FlowErrorInfo.from_error(error)), generation
        )

    def _fail_callback(
        self, error: FlowError, generation: Optional[int] = None
    ) -> FlowState:
        return self._dispatch(
            CallbackFailed(FlowErrorInfo.from_error(error)), generation
        )

    async def revoke(self) -> FlowState:
        """Revoke the connection's tokens and return to ``initiate``."""
        if self._state.step != FlowStep.COMPLETE:
            raise InvalidFlowStep(f"Cannot revoke in step {self._state.step.value}")

        generation = self._next_generation()
        record = self._state.token_record
        if (
            self.revocation_executor is not None
            and record is not None
            and record.refresh_token
        ):
            try:
                await self._call(
                    self.revocation_executor.revoke(self.platform, record.refresh_token)
                )
            except asyncio.TimeoutError:
                return self._dispatch(
                    RevokeFailed(
                        FlowErrorInfo.from_error(
                            RevocationFailed("Token revocation timed out")
                        )
                    ),
                    generation,
                )
            except RevocationFailed as e:
                return self._dispatch(
                    RevokeFailed(FlowErrorInfo.from_error(e)), generation
                )

        if self._superseded(generation, Reset()):
            return self._state

        if self.coordinator is not None:
            self.coordinator.untrack(self.platform)

        logger.info("Platform disconnected", platform=self.platform.value)
        return self._dispatch(Reset())

    async def cancel(self) -> FlowState:
        """Abandon the flow: stop monitoring, clear server attempts, reset."""
        if self._state.step == FlowStep.COMPLETE:
            logger.debug(
                "Cancel ignored for completed flow", platform=self.platform.value
            )
            return self._state

        generation = self._next_generation()
        had_attempt = self._state.step != FlowStep.INITIATE and self._state.state
        self._dispose_monitor()
        self._close_window()
        if had_attempt:
            await self._clear_server_attempts()
        return self._dispatch(Reset(), generation)

    async def retry(self) -> FlowState:
        """Retry after a failure: revoke again in ``complete``, initiate otherwise."""
        if self._state.error is None:
            raise InvalidFlowStep("Nothing to retry")
        if self._state.step == FlowStep.COMPLETE:
            return await self.revoke()
        return await self.initiate()

    def dispose(self) -> None:
        """Stop window polling, release the window and drop pending outcomes."""
        self._next_generation()
        self._dispose_monitor()
        self._window = None

    # ===== Internals =====

    def _dispose_monitor(self) -> None:
        if self._monitor is not None:
            self._monitor.dispose()
            self._monitor = None

    def _close_window(self) -> None:
        window, self._window = self._window, None
        if window is not None and not window.closed:
            window.close()

    async def _clear_server_attempts(self) -> None:
        try:
            await self._call(self.state_client.clear(self.platform))
        except (asyncio.TimeoutError, ConnectCoreError) as e:
            # Stale attempts still expire on their own
            logger.warning(
                "Failed to clear pending authorization attempts",
                platform=self.platform.value,
                error=str(e) or type(e).__name__,
            )
