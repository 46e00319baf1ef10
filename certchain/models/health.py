"""Health check models."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(BaseModel):
    """Health of one dependency of the service."""

    name: str
    status: HealthStatus
    message: str | None = None
    response_time_ms: float | None = None
    details: dict[str, object] = Field(default_factory=dict)


class HealthCheckResponse(BaseModel):
    status: HealthStatus
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: str
    components: list[ComponentHealth] = Field(default_factory=list)

    def is_ready(self) -> bool:
        """Degraded still serves traffic; only unhealthy does not."""
        return self.status != HealthStatus.UNHEALTHY
