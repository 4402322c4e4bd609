"""
Token endpoint collaborators: code exchange, refresh and revocation.

The flow controller and the refresh coordinator only know the Protocols
declared here. The HTTP implementations talk to the platforms' OAuth token
endpoints with one shared httpx.AsyncClient:

- Form-encoded bodies (RFC 6749 section 4.1.3)
- HTTP Basic client authentication, or credentials in the body for
  platforms that require it
- Explicit timeouts for every phase of the request
- invalid_grant / invalid_client / invalid_token on refresh are terminal:
  the refresh token is dead and the user has to re-authorize

Every failure surfaces as ExchangeFailed, RefreshFailed or RevocationFailed.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Protocol

import httpx
import structlog

from connect_core.config import Settings
from connect_core.errors import ExchangeFailed, RefreshFailed, RevocationFailed
from connect_core.platforms import (
    Platform,
    PlatformConfig,
    RevokeStyle,
    get_platform_config,
)
from connect_core.services.token_health import TokenRecord

logger = structlog.get_logger(__name__)

TERMINAL_REFRESH_ERRORS = ("invalid_grant", "invalid_client", "invalid_token")

# Standard token response fields; everything else lands in record metadata
_STANDARD_FIELDS = {
    "access_token",
    "refresh_token",
    "expires_in",
    "token_type",
    "scope",
    "id_token",
}


# ===== Collaborator Protocols =====


class TokenExchanger(Protocol):
    async def exchange(
        self,
        platform: Platform,
        code: str,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        realm_context: Optional[Dict[str, str]] = None,
    ) -> TokenRecord: ...


class RefreshExecutor(Protocol):
    async def refresh(self, record: TokenRecord) -> TokenRecord: ...


class RevocationExecutor(Protocol):
    async def revoke(self, platform: Platform, refresh_token: str) -> None: ...


# ===== Token response parsing =====


def _parse_scopes(raw: Any, fallback: Iterable[str] = ()) -> tuple:
    if raw is None:
        return tuple(fallback)
    if isinstance(raw, (list, tuple)):
        return tuple(str(s) for s in raw if s)
    separators = raw.replace(",", " ")
    return tuple(s for s in separators.split() if s)


def token_record_from_response(
    platform: Platform,
    payload: Dict[str, Any],
    now: Optional[datetime] = None,
    default_scopes: Iterable[str] = (),
    extra_metadata: Optional[Dict[str, Any]] = None,
) -> TokenRecord:
    """
    Build a TokenRecord from a standard OAuth token response.

    Args:
        platform: Platform the tokens belong to
        payload: Decoded JSON token response
        now: Issue time (defaults to the current UTC time)
        default_scopes: Scopes to assume when the response omits ``scope``
        extra_metadata: Additional metadata, e.g. callback ``realm_id``

    Returns:
        TokenRecord with expires_at derived from ``expires_in``
    """
    now = now or datetime.now(timezone.utc)

    expires_at = None
    expires_in = payload.get("expires_in")
    if expires_in is not None:
        try:
            expires_at = now + timedelta(seconds=int(expires_in))
        except (TypeError, ValueError):
            logger.warning(
                "Ignoring malformed expires_in",
                platform=platform.value,
                expires_in=expires_in,
            )

    metadata = {k: v for k, v in payload.items() if k not in _STANDARD_FIELDS}
    metadata.update(extra_metadata or {})

    return TokenRecord(
        platform=platform,
        access_token=payload.get("access_token"),
        refresh_token=payload.get("refresh_token"),
        expires_at=expires_at,
        issued_at=now,
        scopes=_parse_scopes(payload.get("scope"), default_scopes),
        token_type=payload.get("token_type") or "Bearer",
        metadata=metadata,
    )


def _safe_error_code(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        return str(body.get("error", ""))
    return ""


# ===== HTTP implementations =====


class _HttpTokenEndpoint:
    """Shared plumbing for the HTTP executors."""

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=3.0,
                read=settings.oauth_external_timeout_seconds,
                write=settings.oauth_external_timeout_seconds,
                pool=settings.oauth_external_timeout_seconds,
            ),
            follow_redirects=False,
        )

    def _config(self, platform: Platform) -> PlatformConfig:
        return get_platform_config(platform, self.settings)

    @staticmethod
    def _client_auth(
        config: PlatformConfig, form: Dict[str, str]
    ) -> Optional[httpx.BasicAuth]:
        if config.client_auth == "body":
            if config.client_id:
                form["client_id"] = config.client_id
            if config.client_secret:
                form["client_secret"] = config.client_secret
            return None
        return httpx.BasicAuth(config.client_id or "", config.client_secret or "")

    async def _post_form(
        self, config: PlatformConfig, url: str, form: Dict[str, str]
    ) -> httpx.Response:
        auth = self._client_auth(config, form)
        return await self.http_client.post(
            url,
            data=form,
            auth=auth,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


class HttpTokenExchanger(_HttpTokenEndpoint):
    """Exchanges authorization codes at the platform token endpoint."""

    async def exchange(
        self,
        platform: Platform,
        code: str,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        realm_context: Optional[Dict[str, str]] = None,
    ) -> TokenRecord:
        """
        Exchange an authorization code for tokens.

        Args:
            platform: Platform that issued the code
            code: Authorization code from the callback
            code_verifier: PKCE verifier bound to the authorization request
            redirect_uri: Redirect URI used in the authorization request
            realm_context: Platform callback extras (e.g. QuickBooks realmId)

        Returns:
            TokenRecord for the new connection

        Raises:
            ExchangeFailed: On network errors or a non-2xx provider response
        """
        platform = Platform.parse(platform)
        config = self._config(platform)

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or config.redirect_uri or "",
        }
        if code_verifier:
            form["code_verifier"] = code_verifier

        logger.info(
            "Exchanging authorization code",
            platform=platform.value,
            redirect_uri=form["redirect_uri"],
            pkce=bool(code_verifier),
        )

        try:
            response = await self._post_form(config, config.token_url, form)
        except httpx.RequestError as e:
            logger.error(
                "Token exchange network error", platform=platform.value, error=str(e)
            )
            raise ExchangeFailed(f"Network error during token exchange: {e}") from e

        if not response.is_success:
            logger.error(
                "Token exchange failed",
                platform=platform.value,
                status_code=response.status_code,
                error_detail=response.text[:200],
            )
            error_code = _safe_error_code(response)
            raise ExchangeFailed(
                f"Token exchange failed with status {response.status_code}"
                + (f": {error_code}" if error_code else "")
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ExchangeFailed("Token endpoint returned invalid JSON") from e

        if not payload.get("access_token"):
            logger.error(
                "Token response missing access_token",
                platform=platform.value,
                response_keys=list(payload.keys()),
            )
            raise ExchangeFailed("Token response missing access_token")

        extra = {}
        realm_id = (realm_context or {}).get("realmId")
        if realm_id:
            extra["realm_id"] = realm_id

        record = token_record_from_response(
            platform, payload, default_scopes=config.scopes, extra_metadata=extra
        )

        if realm_id and config.api_base_url:
            company_name = await self._lookup_company_name(config, record, realm_id)
            if company_name:
                record.metadata["company_name"] = company_name

        logger.info(
            "Token exchange successful",
            platform=platform.value,
            has_refresh_token=bool(record.refresh_token),
            expires_at=record.expires_at.isoformat() if record.expires_at else None,
        )
        return record

    async def _lookup_company_name(
        self, config: PlatformConfig, record: TokenRecord, realm_id: str
    ) -> Optional[str]:
        """Best-effort QuickBooks company lookup; failures only get logged."""
        url = f"{config.api_base_url}/v3/company/{realm_id}/companyinfo/{realm_id}"
        try:
            response = await self.http_client.get(
                url,
                headers={
                    "Accept": "application/json",
                    "Authorization": f"Bearer {record.access_token}",
                },
            )
            if not response.is_success:
                logger.warning(
                    "Company info lookup failed",
                    platform=config.platform.value,
                    status_code=response.status_code,
                )
                return None
            return response.json().get("CompanyInfo", {}).get("CompanyName")
        except (httpx.RequestError, ValueError) as e:
            logger.warning(
                "Company info lookup error",
                platform=config.platform.value,
                error=str(e),
            )
            return None


class HttpRefreshExecutor(_HttpTokenEndpoint):
    """Refreshes access tokens with the refresh_token grant."""

    async def refresh(self, record: TokenRecord) -> TokenRecord:
        """
        Refresh a token record.

        Returns:
            A new TokenRecord; the previous refresh token is carried over
            when the provider does not rotate it

        Raises:
            RefreshFailed: ``terminal=True`` when the refresh token was rejected
        """
        if not record.refresh_token:
            raise RefreshFailed("No refresh token available", terminal=True)

        config = self._config(record.platform)
        form = {"grant_type": "refresh_token", "refresh_token": record.refresh_token}

        logger.info("Attempting token refresh", platform=record.platform.value)

        try:
            response = await self._post_form(config, config.token_url, form)
        except httpx.RequestError as e:
            logger.warning(
                "Token refresh network error",
                platform=record.platform.value,
                error=str(e),
            )
            raise RefreshFailed(f"Network: {e}") from e

        if response.status_code in (400, 401):
            error_code = _safe_error_code(response)
            if error_code in TERMINAL_REFRESH_ERRORS:
                logger.warning(
                    "Terminal refresh error",
                    platform=record.platform.value,
                    error_code=error_code,
                    status_code=response.status_code,
                )
                raise RefreshFailed(f"Terminal: {error_code}", terminal=True)

        if not response.is_success:
            logger.warning(
                "HTTP error during token refresh",
                platform=record.platform.value,
                status_code=response.status_code,
                error_detail=response.text[:200],
            )
            raise RefreshFailed(f"HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise RefreshFailed("Token endpoint returned invalid JSON") from e

        if not payload.get("access_token"):
            raise RefreshFailed("Refresh response missing access_token")

        refreshed = token_record_from_response(
            record.platform, payload, default_scopes=record.scopes
        )
        if not refreshed.refresh_token:
            refreshed.refresh_token = record.refresh_token

        logger.info(
            "Token refresh successful",
            platform=record.platform.value,
            has_new_refresh_token=bool(payload.get("refresh_token")),
        )
        return refreshed


class HttpRevocationExecutor(_HttpTokenEndpoint):
    """Revokes refresh tokens at the platform revocation endpoint."""

    async def revoke(self, platform: Platform, refresh_token: str) -> None:
        """
        Revoke a refresh token.

        Platforms without a revocation endpoint are a no-op; the caller still
        drops its local copy of the tokens.

        Raises:
            RevocationFailed: On network errors or a non-2xx provider response
        """
        platform = Platform.parse(platform)
        config = self._config(platform)

        if not refresh_token:
            raise RevocationFailed("Missing refresh token")

        if config.revoke_style is RevokeStyle.UNSUPPORTED or not config.revoke_url:
            logger.info(
                "Platform has no token revocation endpoint", platform=platform.value
            )
            return

        try:
            if config.revoke_style is RevokeStyle.DELETE_PATH:
                response = await self.http_client.delete(
                    f"{config.revoke_url}/{refresh_token}"
                )
            else:
                response = await self._post_form(
                    config, config.revoke_url, {"token": refresh_token}
                )
        except httpx.RequestError as e:
            logger.error(
                "Token revocation network error", platform=platform.value, error=str(e)
            )
            raise RevocationFailed(f"Network error during revocation: {e}") from e

        if not response.is_success:
            logger.error(
                "Token revocation failed",
                platform=platform.value,
                status_code=response.status_code,
            )
            raise RevocationFailed(
                f"Revocation failed with status {response.status_code}"
            )

        logger.info("Tokens revoked", platform=platform.value)
