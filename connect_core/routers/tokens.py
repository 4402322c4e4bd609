"""
Token management endpoints.

- POST /oauth/tokens - store a platform's tokens and start tracking them
- POST /oauth/tokens/{platform}/refresh - refresh now, outside the schedule
- DELETE /oauth/tokens/{platform} - stop tracking, optionally revoking first

Tracked tokens feed the background refresh loop and /oauth/tokens/health.
"""

from typing import List, Optional

import structlog
from fastapi import APIRouter, Body, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field

from connect_core.errors import RefreshFailed, RevocationFailed, UnknownPlatformError
from connect_core.platforms import Platform, get_platform_config
from connect_core.routers.oauth_state import create_error_response
from connect_core.services.oauth_executors import (
    RevocationExecutor,
    token_record_from_response,
)
from connect_core.services.token_refresh_coordinator import TokenRefreshCoordinator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/oauth/tokens", tags=["oauth"])


class StoreTokensRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform: Optional[str] = None
    access_token: Optional[str] = Field(default=None, alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    expires_in: Optional[int] = Field(default=None, alias="expiresIn")
    scopes: Optional[List[str]] = None
    token_type: Optional[str] = Field(default=None, alias="tokenType")
    realm_id: Optional[str] = Field(default=None, alias="realmId")


def get_token_coordinator(request: Request) -> TokenRefreshCoordinator:
    return request.app.state.token_coordinator


def get_revocation_executor(request: Request) -> RevocationExecutor:
    return request.app.state.revocation_executor


def _invalid_platform(request: Request):
    return create_error_response(
        status.HTTP_400_BAD_REQUEST,
        "invalid_platform",
        "Valid platform is required",
        request,
    )


def _not_tracked(request: Request, platform: Platform):
    return create_error_response(
        status.HTTP_404_NOT_FOUND,
        "not_connected",
        f"No tokens stored for {platform.value}",
        request,
    )


@router.post(
    "",
    summary="Store tokens",
    description="Store a platform's tokens and track their health",
)
async def store_tokens(
    request: Request,
    body: Optional[StoreTokensRequest] = Body(default=None),  # noqa: B008
    coordinator: TokenRefreshCoordinator = Depends(  # noqa: B008
        get_token_coordinator
    ),
):
    """
    Store tokens for a platform, replacing any previous record.

    Example response:
        {"success": true, "token": {"platform": "QUICKBOOKS", ...},
         "health": {"status": "healthy", ...}}
    """
    if body is None or not body.platform or not body.access_token:
        return create_error_response(
            status.HTTP_400_BAD_REQUEST,
            "missing_parameters",
            "Platform and access token are required",
            request,
        )

    try:
        platform = Platform.parse(body.platform)
    except UnknownPlatformError:
        return _invalid_platform(request)

    payload = {
        "access_token": body.access_token,
        "refresh_token": body.refresh_token,
        "expires_in": body.expires_in,
        "token_type": body.token_type,
    }
    if body.scopes is not None:
        payload["scope"] = body.scopes

    record = token_record_from_response(
        platform,
        payload,
        default_scopes=get_platform_config(platform).scopes,
        extra_metadata={"realm_id": body.realm_id} if body.realm_id else None,
    )
    coordinator.track(record)

    return {
        "success": True,
        "token": record.to_public_dict(),
        "health": coordinator.get_health(platform).to_dict(),
    }


@router.post(
    "/{platform}/refresh",
    summary="Refresh tokens now",
    description="Run a token refresh immediately for one platform",
)
async def refresh_tokens(
    request: Request,
    platform: str,
    coordinator: TokenRefreshCoordinator = Depends(  # noqa: B008
        get_token_coordinator
    ),
):
    try:
        resolved = Platform.parse(platform)
    except UnknownPlatformError:
        return _invalid_platform(request)

    if coordinator.get_record(resolved) is None:
        return _not_tracked(request, resolved)
    if coordinator.is_refreshing(resolved):
        return create_error_response(
            status.HTTP_409_CONFLICT,
            "refresh_in_progress",
            "A refresh is already running for this platform",
            request,
        )

    try:
        health = await coordinator.refresh_now(resolved)
    except RefreshFailed as e:
        return create_error_response(
            status.HTTP_400_BAD_REQUEST, "no_refresh_token", e.message, request
        )

    if health is None:
        return _not_tracked(request, resolved)

    error = coordinator.last_refresh_error(resolved)
    if error:
        return create_error_response(
            status.HTTP_502_BAD_GATEWAY,
            "refresh_failed",
            error,
            request,
            needsReauthorization=coordinator.needs_reauthorization(resolved),
            health=health.to_dict(),
        )

    return {"success": True, "health": health.to_dict()}


@router.delete(
    "/{platform}",
    summary="Remove tokens",
    description="Stop tracking a platform's tokens, optionally revoking them",
)
async def remove_tokens(
    request: Request,
    platform: str,
    revoke: bool = Query(default=False),
    coordinator: TokenRefreshCoordinator = Depends(  # noqa: B008
        get_token_coordinator
    ),
    revoker: RevocationExecutor = Depends(get_revocation_executor),  # noqa: B008
):
    try:
        resolved = Platform.parse(platform)
    except UnknownPlatformError:
        return _invalid_platform(request)

    record = coordinator.get_record(resolved)
    if record is None:
        return _not_tracked(request, resolved)

    revoked = False
    if revoke and record.refresh_token:
        try:
            await revoker.revoke(resolved, record.refresh_token)
        except RevocationFailed as e:
            # Tokens stay tracked so the revocation can be retried
            return create_error_response(
                status.HTTP_502_BAD_GATEWAY, "revocation_failed", e.message, request
            )
        revoked = True

    coordinator.untrack(resolved)
    logger.info("Platform tokens removed", platform=resolved.value, revoked=revoked)
    return {"success": True, "platform": resolved.value, "revoked": revoked}
