"""
Authorization state endpoints.

- GET /oauth/state - begin an authorization attempt (state + PKCE challenge)
- POST /oauth/state/validate - validate and consume a callback state
- DELETE /oauth/state - clear every pending attempt of a platform

Rejections are answered with stable error strings so the dashboard can
show a precise message:

- invalid_or_expired (401): unknown, expired or already used state
- platform_mismatch (401): state issued for another platform
- missing_parameters (400): state or platform missing from the request
- invalid_platform (400): platform missing or not supported
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from connect_core.errors import UnknownPlatformError
from connect_core.platforms import Platform
from connect_core.services.authorization_state import (
    AuthorizationStateService,
    RejectionReason,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])

REJECTION_ERRORS = {
    RejectionReason.NOT_FOUND_OR_EXPIRED: (
        "invalid_or_expired",
        "Invalid or expired state",
    ),
    RejectionReason.PLATFORM_MISMATCH: ("platform_mismatch", "Platform mismatch"),
}


class ValidateStateRequest(BaseModel):
    state: Optional[str] = None
    platform: Optional[str] = None


class ClearStateRequest(BaseModel):
    platform: Optional[str] = None


def get_state_service(request: Request) -> AuthorizationStateService:
    """Dependency returning the service created in the app lifespan."""
    return request.app.state.state_service


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def create_error_response(
    status_code: int,
    error_code: str,
    message: str,
    request: Request,
    **extra,
) -> JSONResponse:
    """
    Create a standardized error response.

    Args:
        status_code: HTTP status
        error_code: Stable machine-readable error string
        message: Human-readable message
        request: Current request (for the request ID)
        **extra: Additional fields, e.g. ``valid=False``
    """
    return JSONResponse(
        status_code=status_code,
        content={
            **extra,
            "error": error_code,
            "message": message,
            "requestId": _request_id(request),
        },
    )


@router.get(
    "/state",
    status_code=status.HTTP_200_OK,
    summary="Begin authorization",
    description="Create a one-time state token, optionally with a PKCE challenge",
)
async def begin_authorization(
    request: Request,
    platform: Optional[str] = Query(default=None),
    pkce: bool = Query(default=False),
    redirect_uri: Optional[str] = Query(default=None),
    service: AuthorizationStateService = Depends(get_state_service),  # noqa: B008
):
    """
    Begin an authorization attempt.

    Example response:
        {"state": "...", "codeChallenge": "...", "codeChallengeMethod": "S256"}
    """
    try:
        resolved = Platform.parse(platform)
    except UnknownPlatformError:
        logger.warning("Rejected authorization request", platform=platform)
        return create_error_response(
            status.HTTP_400_BAD_REQUEST,
            "invalid_platform",
            "Valid platform is required",
            request,
        )

    grant = await service.begin_authorization(
        resolved, use_pkce=pkce, redirect_uri=redirect_uri
    )
    return {
        "state": grant.state,
        "codeChallenge": grant.code_challenge,
        "codeChallengeMethod": grant.code_challenge_method,
    }


@router.post(
    "/state/validate",
    summary="Validate callback state",
    description="Validate and consume a state token returned by the provider",
)
async def validate_authorization(
    request: Request,
    body: Optional[ValidateStateRequest] = Body(default=None),  # noqa: B008
    service: AuthorizationStateService = Depends(get_state_service),  # noqa: B008
):
    """
    Validate a callback state. The attempt is consumed whatever the outcome.

    Example response:
        {"valid": true, "codeVerifier": "...", "redirectUri": null}
    """
    if body is None or not body.state or not body.platform:
        return create_error_response(
            status.HTTP_400_BAD_REQUEST,
            "missing_parameters",
            "State and platform are required",
            request,
            valid=False,
        )

    try:
        platform = Platform.parse(body.platform)
    except UnknownPlatformError:
        return create_error_response(
            status.HTTP_400_BAD_REQUEST,
            "invalid_platform",
            "Valid platform is required",
            request,
            valid=False,
        )

    result = await service.validate_authorization(body.state, platform)
    if not result.valid:
        error_code, message = REJECTION_ERRORS[result.reason]
        return create_error_response(
            status.HTTP_401_UNAUTHORIZED, error_code, message, request, valid=False
        )

    return {
        "valid": True,
        "codeVerifier": result.code_verifier,
        "redirectUri": result.redirect_uri,
    }


@router.delete(
    "/state",
    summary="Clear pending attempts",
    description="Remove every pending authorization attempt for a platform",
)
async def clear_authorization(
    request: Request,
    body: Optional[ClearStateRequest] = Body(default=None),  # noqa: B008
    service: AuthorizationStateService = Depends(get_state_service),  # noqa: B008
):
    if body is None or not body.platform:
        return create_error_response(
            status.HTTP_400_BAD_REQUEST,
            "missing_parameters",
            "Platform is required",
            request,
        )

    try:
        platform = Platform.parse(body.platform)
    except UnknownPlatformError:
        return create_error_response(
            status.HTTP_400_BAD_REQUEST,
            "invalid_platform",
            "Valid platform is required",
            request,
        )

    removed = await service.clear_authorization(platform)
    return {"success": True, "cleared": removed}
