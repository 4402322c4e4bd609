"""
Clients for the authorization state service.

The flow controller talks to the state service through the
AuthorizationStateClient protocol. Two implementations are provided:

- HttpStateClient: calls the /oauth/state endpoints over HTTP (httpx)
- LocalStateClient: calls an in-process AuthorizationStateService

Rejections come back as ValidationResult values on both; transport and
server faults raise StateServiceUnavailable.
"""

from typing import Any, Dict, Optional, Protocol

import httpx
import structlog

from connect_core.errors import StateServiceUnavailable, UnknownPlatformError
from connect_core.platforms import Platform
from connect_core.services.authorization_state import (
    AuthorizationGrant,
    AuthorizationStateService,
    RejectionReason,
    ValidationResult,
)

logger = structlog.get_logger(__name__)

# Wire error strings returned by POST /oauth/state/validate
WIRE_REJECTIONS = {
    "invalid_or_expired": RejectionReason.NOT_FOUND_OR_EXPIRED,
    "platform_mismatch": RejectionReason.PLATFORM_MISMATCH,
}


class AuthorizationStateClient(Protocol):
    async def begin(
        self,
        platform: Platform,
        use_pkce: bool = False,
        redirect_uri: Optional[str] = None,
    ) -> AuthorizationGrant: ...

    async def validate(self, state: str, platform: Platform) -> ValidationResult: ...

    async def clear(self, platform: Platform) -> None: ...


class LocalStateClient:
    """AuthorizationStateClient backed by an in-process service."""

    def __init__(self, service: AuthorizationStateService):
        self.service = service

    async def begin(
        self,
        platform: Platform,
        use_pkce: bool = False,
        redirect_uri: Optional[str] = None,
    ) -> AuthorizationGrant:
        return await self.service.begin_authorization(
            platform, use_pkce=use_pkce, redirect_uri=redirect_uri
        )

    async def validate(self, state: str, platform: Platform) -> ValidationResult:
        return await self.service.validate_authorization(state, platform)

    async def clear(self, platform: Platform) -> None:
        await self.service.clear_authorization(platform)


class HttpStateClient:
    """
    AuthorizationStateClient that calls the state service HTTP API.

    Args:
        base_url: Base URL of the service exposing /oauth/state
        http_client: Optional pre-configured client (tests pass one with a
            MockTransport); owned and closed by this object otherwise
        timeout_seconds: Per-request timeout when creating the client
    """

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
    ):
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=3.0),
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.http_client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            logger.error(
                "State service request failed", method=method, path=path, error=str(e)
            )
            raise StateServiceUnavailable(f"State service unreachable: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise StateServiceUnavailable(
                f"State service returned invalid JSON (status {response.status_code})"
            ) from e
        if not isinstance(body, dict):
            raise StateServiceUnavailable("State service returned unexpected payload")
        return body

    async def begin(
        self,
        platform: Platform,
        use_pkce: bool = False,
        redirect_uri: Optional[str] = None,
    ) -> AuthorizationGrant:
        platform = Platform.parse(platform)
        params = {"platform": platform.value, "pkce": "true" if use_pkce else "false"}
        if redirect_uri:
            params["redirect_uri"] = redirect_uri

        response = await self._request("GET", "/oauth/state", params=params)
        if response.status_code == 400:
            raise UnknownPlatformError(platform.value)
        if not response.is_success:
            raise StateServiceUnavailable(
                f"State service returned {response.status_code}"
            )

        body = self._json(response)
        return AuthorizationGrant(
            state=body["state"],
            code_challenge=body.get("codeChallenge"),
            code_challenge_method=body.get("codeChallengeMethod"),
        )

    async def validate(self, state: str, platform: Platform) -> ValidationResult:
        platform = Platform.parse(platform)
        response = await self._request(
            "POST",
            "/oauth/state/validate",
            json={"state": state, "platform": platform.value},
        )

        if response.status_code == 401:
            error = self._json(response).get("error")
            reason = WIRE_REJECTIONS.get(error)
            if reason is None:
                raise StateServiceUnavailable(f"Unexpected rejection: {error!r}")
            return ValidationResult.rejected(reason)

        if not response.is_success:
            raise StateServiceUnavailable(
                f"State service returned {response.status_code}"
            )

        body = self._json(response)
        return ValidationResult.accepted(
            code_verifier=body.get("codeVerifier"),
            redirect_uri=body.get("redirectUri"),
        )

    async def clear(self, platform: Platform) -> None:
        platform = Platform.parse(platform)
        response = await self._request(
            "DELETE", "/oauth/state", json={"platform": platform.value}
        )
        if not response.is_success:
            raise StateServiceUnavailable(
                f"State service returned {response.status_code}"
            )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
