"""
Service dependency container.

Centralizes service creation and access. Services are built once in the
application lifespan and injected into routes via FastAPI's Depends().
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from certchain.models.backup import BackupLogEntry
from certchain.models.certificate import DeploymentCertificate
from certchain.services.audit_chain import AuditChain
from certchain.services.backup import BackupArchiver
from certchain.services.certificates import CertificateIssuer
from certchain.services.facade import IntegrityFacade
from certchain.services.git import GitService
from certchain.services.health import HealthCheckService
from certchain.services.inspector import RepositoryInspector
from certchain.services.inventory import ComponentInventoryProvider, EmptyInventory, JsonFileInventory
from certchain.services.record_log import CappedRecordLog
from certchain.services.versioning import VersionAllocator
from certchain.version import get_version

if TYPE_CHECKING:
    from certchain.config import Settings
    from certchain.services.lock import RepositoryLockRegistry


class ServiceContainer:
    """Container for all application services."""

    def __init__(
        self,
        settings: Settings,
        audit: AuditChain,
        inspector: RepositoryInspector,
        git_service: GitService,
        issuer: CertificateIssuer,
        archiver: BackupArchiver,
        facade: IntegrityFacade,
        health_service: HealthCheckService,
    ) -> None:
        self.settings = settings
        self.audit = audit
        self.inspector = inspector
        self.git_service = git_service
        self.issuer = issuer
        self.archiver = archiver
        self.facade = facade
        self.health_service = health_service


_container: ServiceContainer | None = None


async def build_container(settings: Settings, locks: RepositoryLockRegistry) -> ServiceContainer:
    """Construct every service from settings and load the audit chain tip."""
    audit = AuditChain(
        settings.audit_path,
        max_entries_per_segment=settings.audit_max_entries_per_segment,
        max_segment_age_hours=settings.audit_max_segment_age_hours,
        retention_days=settings.audit_retention_days,
    )
    await audit.initialize()

    inspector = RepositoryInspector(locks, timeout_seconds=settings.git_timeout_seconds)
    git_service = GitService(
        locks,
        timeout_seconds=settings.git_timeout_seconds,
        push_timeout_seconds=settings.git_push_timeout_seconds,
    )

    inventory: ComponentInventoryProvider = EmptyInventory()
    if settings.sbom_summary_file:
        inventory = JsonFileInventory(Path(settings.sbom_summary_file))

    issuer = CertificateIssuer(
        inspector,
        git_service,
        audit,
        CappedRecordLog(settings.certificates_file, DeploymentCertificate, settings.certificates_max_entries),
        machine_id=settings.machine_id,
        inventory=inventory,
    )
    archiver = BackupArchiver(
        inspector,
        locks,
        CappedRecordLog(settings.backup_log_file, BackupLogEntry, settings.backup_log_max_entries),
        machine_id=settings.machine_id,
        max_file_bytes=settings.backup_max_file_bytes,
        exclude_extensions=tuple(settings.backup_exclude_extensions),
    )
    facade = IntegrityFacade(
        settings.repositories,
        inspector,
        git_service,
        VersionAllocator(),
        audit,
        issuer,
        archiver,
    )
    return ServiceContainer(
        settings=settings,
        audit=audit,
        inspector=inspector,
        git_service=git_service,
        issuer=issuer,
        archiver=archiver,
        facade=facade,
        health_service=HealthCheckService(facade, settings.audit_path, version=get_version()),
    )


def init_container(container: ServiceContainer) -> None:
    """Install the service container (called once in FastAPI lifespan)."""
    global _container
    _container = container


def get_container() -> ServiceContainer:
    """Get service container (use via FastAPI Depends).

    Raises:
        RuntimeError: If container not initialized (lifespan not running)
    """
    if _container is None:
        msg = "Service container not initialized - application lifespan may not be running"
        raise RuntimeError(msg)
    return _container


def reset_container_for_testing() -> None:
    global _container
    _container = None
