"""Health check endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Response, status

from certchain.dependencies import get_health_service, verify_token
from certchain.models.health import HealthCheckResponse

if TYPE_CHECKING:
    from certchain.services.health import HealthCheckService

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness check. No authentication required."""
    return {"status": "ok"}


@router.get("/health/ready", response_model=HealthCheckResponse)
async def health_ready(
    response: Response,
    health_service: HealthCheckService = Depends(get_health_service),
) -> HealthCheckResponse:
    """
    Readiness check. No authentication required.

    Returns:
        - 200 if the service is healthy or degraded (some repository unreadable)
        - 503 if the audit storage is unusable
    """
    health_check = await health_service.check_health()

    if not health_check.is_ready():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return health_check


@router.get("/health/detailed", response_model=HealthCheckResponse)
async def health_detailed(
    health_service: HealthCheckService = Depends(get_health_service),
    _: None = Depends(verify_token),
) -> HealthCheckResponse:
    return await health_service.check_health()
