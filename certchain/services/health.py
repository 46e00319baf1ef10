"""Readiness checks for the audit storage and the configured repositories."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING

from certchain.models.health import ComponentHealth, HealthCheckResponse, HealthStatus

if TYPE_CHECKING:
    from certchain.services.facade import IntegrityFacade

logger = logging.getLogger(__name__)


class HealthCheckService:
    def __init__(self, facade: IntegrityFacade, audit_path: Path, version: str = "unknown") -> None:
        self.facade = facade
        self.audit_path = Path(audit_path)
        self.version = version

    async def check_audit_storage(self) -> ComponentHealth:
        """
        The audit directory must exist and be writable.

        Without it no operation can be recorded, so this is the only check
        that makes the service unhealthy.
        """
        started = time.perf_counter()

        def write_check() -> None:
            check_file = self.audit_path / ".health_check"
            check_file.write_text("health_check", encoding="utf-8")
            check_file.unlink()

        if not self.audit_path.is_dir():
            return ComponentHealth(
                name="audit_storage",
                status=HealthStatus.UNHEALTHY,
                message="Audit directory does not exist",
                details={"path": str(self.audit_path)},
            )
        try:
            await asyncio.to_thread(write_check)
        except OSError as e:
            logger.warning("Audit storage not writable", extra={"path": str(self.audit_path), "error": str(e)})
            return ComponentHealth(
                name="audit_storage",
                status=HealthStatus.UNHEALTHY,
                message=f"Audit directory not writable: {e}",
                details={"path": str(self.audit_path)},
            )

        return ComponentHealth(
            name="audit_storage",
            status=HealthStatus.HEALTHY,
            message="Audit directory accessible and writable",
            response_time_ms=(time.perf_counter() - started) * 1000,
            details={"path": str(self.audit_path), "chain_tip": self.facade.audit.tip},
        )

    async def check_repositories(self) -> ComponentHealth:
        started = time.perf_counter()
        overview = await self.facade.all_status()
        invalid = {name: state.error for name, state in overview.repositories.items() if not state.is_valid}
        elapsed = (time.perf_counter() - started) * 1000

        if invalid:
            return ComponentHealth(
                name="repositories",
                status=HealthStatus.DEGRADED,
                message=f"{len(invalid)} of {len(overview.repositories)} repositories unreadable",
                response_time_ms=elapsed,
                details={"invalid": invalid},
            )
        return ComponentHealth(
            name="repositories",
            status=HealthStatus.HEALTHY,
            message=f"{len(overview.repositories)} repositories readable",
            response_time_ms=elapsed,
        )

    async def check_health(self) -> HealthCheckResponse:
        components = list(await asyncio.gather(self.check_audit_storage(), self.check_repositories()))

        if any(c.status == HealthStatus.UNHEALTHY for c in components):
            overall = HealthStatus.UNHEALTHY
        elif any(c.status == HealthStatus.DEGRADED for c in components):
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        return HealthCheckResponse(status=overall, version=self.version, components=components)
