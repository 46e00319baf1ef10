from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from certchain.config import get_settings
from certchain.models.audit import AuditActor
from certchain.services.container import get_container

if TYPE_CHECKING:
    from certchain.services.facade import IntegrityFacade
    from certchain.services.health import HealthCheckService

security = HTTPBearer()

API_CLIENT = "api-client"


async def verify_token(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> None:
    """Verify the bearer token matches the configured auth token."""
    if credentials.credentials != get_settings().auth_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
        )


async def get_facade() -> IntegrityFacade:
    """Get the integrity facade via dependency injection."""
    container = get_container()
    return container.facade


async def get_health_service() -> HealthCheckService:
    return get_container().health_service


async def get_actor(request: Request) -> AuditActor:
    """
    Who is calling, for audit entries.

    Clients may name the human operator with the X-Operator header; the
    bearer token itself only identifies the API client.
    """
    operator = request.headers.get("X-Operator")
    return AuditActor(
        user_id=API_CLIENT,
        user_name=operator.strip()[:128] if operator and operator.strip() else None,
        ip_address=request.client.host if request.client else None,
    )
