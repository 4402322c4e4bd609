"""
Health check endpoints for service monitoring.

- /healthz and /healthz/live for load balancers and orchestrators
- /oauth/tokens/health for the health of every connected platform token
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, status

from connect_core.config import Settings, get_settings
from connect_core.services.token_health import HealthStatus
from connect_core.utils.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get(
    "/healthz",
    response_model=Dict[str, str],
    status_code=status.HTTP_200_OK,
    summary="Health check",
    description="Returns service health status and version information",
)
async def health_check(
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> Dict[str, str]:
    """
    Health check endpoint for monitoring and load balancer probes.

    Example response:
        {"status": "ok", "version": "0.1.0", "environment": "development"}
    """
    logger.debug("Health check requested")

    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.app_env,
    }


@router.get(
    "/healthz/live",
    response_model=Dict[str, str],
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
    include_in_schema=False,
)
async def liveness_probe() -> Dict[str, str]:
    """Returns 200 if the service is alive, regardless of dependencies."""
    return {"status": "alive"}


@router.get(
    "/oauth/tokens/health",
    status_code=status.HTTP_200_OK,
    summary="Platform token health",
    description="Current health of every tracked platform token",
    tags=["oauth"],
)
async def token_health(request: Request) -> Dict[str, Any]:
    """
    Token health for every connected platform.

    The overall status is the worst platform status; ``refreshing`` counts
    as critical since the token is not yet usable again.

    Example response:
        {
            "status": "warning",
            "platforms": {
                "QUICKBOOKS": {"status": "warning", "expiresIn": 2520, ...}
            },
            "coordinator": {"is_running": true, "ticks_completed": 12, ...}
        }
    """
    coordinator = request.app.state.token_coordinator
    health = coordinator.get_all_health()

    severity = {
        HealthStatus.HEALTHY: 0,
        HealthStatus.WARNING: 1,
        HealthStatus.CRITICAL: 2,
        HealthStatus.REFRESHING: 2,
        HealthStatus.EXPIRED: 3,
    }
    overall = HealthStatus.HEALTHY
    for item in health.values():
        if severity[item.status] > severity[overall]:
            overall = item.status

    return {
        "status": overall.value,
        "platforms": {
            platform.value: {
                **item.to_dict(),
                "needsReauthorization": coordinator.needs_reauthorization(platform),
            }
            for platform, item in health.items()
        },
        "coordinator": coordinator.get_service_stats(),
    }
