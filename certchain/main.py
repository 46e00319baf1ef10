import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from certchain.api import audit, git, health, integrity
from certchain.config import get_settings
from certchain.logging_config import configure_json_logging
from certchain.middleware.request_id import RequestIDMiddleware
from certchain.models.audit import AuditAction, AuditCategory, AuditResult
from certchain.services.audit_chain import AuditChain
from certchain.services.container import build_container, init_container, reset_container_for_testing
from certchain.services.facade import IntegrityFacade
from certchain.services.lock import init_repository_locks, reset_locks_for_testing
from certchain.version import get_version

settings = get_settings()

configure_json_logging(log_level=settings.log_level, use_json=settings.log_use_json)
logger = logging.getLogger(__name__)


async def periodic_integrity_verification(facade: IntegrityFacade, interval_seconds: int = 120) -> None:
    """
    Background task that checks every repository and the audit chain.

    Each run is recorded as IntegrityAutoVerify; a broken chain is recorded
    as an AuditVerify error.
    """
    logger.info(f"Starting periodic integrity verification (interval: {interval_seconds}s)")

    while True:
        try:
            await asyncio.sleep(interval_seconds)
            bundle = await facade.run_scheduled_verification()
            if not bundle.all_clean:
                logger.warning(
                    "Scheduled integrity verification found non-clean repositories",
                    extra={"certificate_id": bundle.certificate_id},
                )
        except asyncio.CancelledError:
            logger.info("Periodic integrity verification task cancelled")
            break
        except Exception as e:
            logger.error(f"Error in periodic integrity verification: {e}")
            # Continue despite errors


async def periodic_audit_retention(audit_chain: AuditChain, interval_seconds: int = 3600) -> None:
    """Background task that prunes audit segments past the retention period."""
    logger.info(f"Starting periodic audit retention (interval: {interval_seconds}s)")

    while True:
        try:
            await asyncio.sleep(interval_seconds)
            pruned = await audit_chain.apply_retention()
            if pruned:
                logger.info(f"Audit retention pruned {pruned} entries")
        except asyncio.CancelledError:
            logger.info("Periodic audit retention task cancelled")
            break
        except Exception as e:
            logger.error(f"Error in periodic audit retention: {e}")


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup and shutdown."""
    logger.info("Starting certchain server...")

    # Locks bind to the running event loop (MUST be first!)
    locks = await init_repository_locks()

    container = await build_container(settings, locks)
    init_container(container)

    await container.audit.record(
        AuditCategory.SYSTEM,
        AuditAction.SYSTEM_START,
        AuditResult.SUCCESS,
        details=f"certchain {get_version()} started on {settings.machine_id}",
        affected_item_count=len(settings.repositories),
    )
    logger.info(
        "certchain server ready",
        extra={"repositories": sorted(settings.repositories), "machine_id": settings.machine_id},
    )

    verification_task = None
    if settings.integrity_verification_interval_seconds > 0:
        verification_task = asyncio.create_task(
            periodic_integrity_verification(container.facade, settings.integrity_verification_interval_seconds)
        )
    retention_task = None
    if settings.audit_retention_interval_seconds > 0:
        retention_task = asyncio.create_task(
            periodic_audit_retention(container.audit, settings.audit_retention_interval_seconds)
        )

    yield

    logger.info("certchain server shutting down")

    await _cancel(verification_task)
    await _cancel(retention_task)

    await container.audit.record(
        AuditCategory.SYSTEM,
        AuditAction.SYSTEM_STOP,
        AuditResult.SUCCESS,
        details=f"certchain stopped on {settings.machine_id}",
    )

    reset_container_for_testing()
    await reset_locks_for_testing()


app = FastAPI(
    title="certchain",
    description="Repository integrity certification and hash-chained audit log",
    version=get_version(),
    lifespan=lifespan,
)

app.add_middleware(RequestIDMiddleware)

app.include_router(git.router, tags=["git"])
app.include_router(integrity.router, tags=["integrity"])
app.include_router(audit.router, tags=["audit"])
app.include_router(health.router)
