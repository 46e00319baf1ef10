"""
Single entry point for the HTTP layer.

Resolves repository names from configuration, delegates to the services and
records one audit entry per mutating operation (actor, result, duration).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

from certchain.exceptions import (
    CertChainError,
    CertificateNotFoundError,
    ChainIntegrityError,
    PartialWorkflowFailure,
    RepositoryNotFoundError,
    RepositoryOperationError,
    ValidationError,
)
from certchain.models.audit import (
    AuditAction,
    AuditActor,
    AuditCategory,
    AuditExport,
    AuditLogPage,
    AuditLogQuery,
    AuditLogStatus,
    AuditResult,
    AuditSummary,
    ChainVerification,
)
from certchain.models.backup import BackupLogEntry
from certchain.models.certificate import (
    CertificateExport,
    CertificateVerification,
    DeploymentCertificate,
    IntegrityCertificate,
    IntegrityStatus,
    WorkflowResult,
)
from certchain.models.release import ReleaseTag, VersionPreview
from certchain.models.repository import (
    CommitInfo,
    GitOperationResult,
    ModifiedFile,
    RepositoryOverview,
    RepositoryState,
)
from certchain.services.audit_chain import AuditChain
from certchain.services.backup import BackupArchiver
from certchain.services.certificates import CertificateIssuer, extract_author
from certchain.services.git import GitService
from certchain.services.inspector import RepositoryInspector
from certchain.services.versioning import VersionAllocator

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures caused by the request or the remote rather than by this service
_FAILURE_ERRORS = (RepositoryOperationError, PartialWorkflowFailure, ValidationError, RepositoryNotFoundError)


class IntegrityFacade:
    """Repository integrity, certification and audit operations by repository name."""

    def __init__(
        self,
        repositories: dict[str, str],
        inspector: RepositoryInspector,
        git_service: GitService,
        allocator: VersionAllocator,
        audit: AuditChain,
        issuer: CertificateIssuer,
        archiver: BackupArchiver,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repositories = {name.lower(): path for name, path in repositories.items()}
        self.inspector = inspector
        self.git = git_service
        self.allocator = allocator
        self.audit = audit
        self.issuer = issuer
        self.archiver = archiver
        self._clock = clock or (lambda: datetime.now(UTC))

    def resolve(self, name: str) -> tuple[str, str]:
        """
        Map a repository name (case-insensitive) to (canonical name, path).

        Raises:
            RepositoryNotFoundError: If the name is not configured
        """
        key = (name or "").strip().lower()
        path = self.repositories.get(key)
        if not path:
            raise RepositoryNotFoundError(
                f"Repository '{name}' not found",
                context={"repository": name, "configured": sorted(self.repositories)},
            )
        return key, path

    async def _audited(
        self,
        category: AuditCategory,
        action: AuditAction,
        details: str,
        actor: AuditActor | None,
        operation: Callable[[], Awaitable[T]],
        affected_item_count: Callable[[T], int | None] | None = None,
    ) -> T:
        started = time.perf_counter()
        try:
            result = await operation()
        except CertChainError as e:
            outcome = AuditResult.FAILURE if isinstance(e, _FAILURE_ERRORS) else AuditResult.ERROR
            await self.audit.record(
                category,
                action,
                outcome,
                details=f"{details}: {e.message}",
                actor=actor,
                additional_data={"error_type": type(e).__name__, **_jsonable(e.context)},
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            raise
        except Exception as e:
            await self.audit.record(
                category,
                action,
                AuditResult.ERROR,
                details=f"{details}: {e}",
                actor=actor,
                additional_data={"error_type": type(e).__name__},
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            raise

        await self.audit.record(
            category,
            action,
            AuditResult.SUCCESS,
            details=details,
            actor=actor,
            affected_item_count=affected_item_count(result) if affected_item_count else None,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        return result

    # Repository queries

    async def all_status(self) -> RepositoryOverview:
        """Status of every configured repository; an unreadable one is reported invalid."""
        states: dict[str, RepositoryState] = {}
        for name, path in self.repositories.items():
            try:
                states[name] = await self.inspector.status(path, name)
            except CertChainError as e:
                logger.warning(
                    "Repository status unavailable",
                    extra={"repository": name, "error": e.message},
                )
                states[name] = RepositoryState(name=name, path=path, is_valid=False, error=e.message)
        return RepositoryOverview(timestamp=self._clock(), repositories=states)

    async def repository_status(self, name: str) -> RepositoryState:
        repository, path = self.resolve(name)
        return await self.inspector.status(path, repository)

    async def history(self, name: str, count: int = 20) -> list[CommitInfo]:
        _, path = self.resolve(name)
        return await self.inspector.history(path, count)

    async def modified_files(self, name: str) -> list[ModifiedFile]:
        _, path = self.resolve(name)
        return await self.inspector.modified_files(path)

    # Mutations

    async def commit(self, name: str, message: str, actor: AuditActor | None = None) -> GitOperationResult:
        repository, path = self.resolve(name)
        return await self._audited(
            AuditCategory.GIT,
            AuditAction.GIT_COMMIT,
            f"Commit in {repository}: {message}",
            actor,
            lambda: self.git.commit(path, message),
        )

    async def push(
        self,
        name: str,
        operator_name: str | None = None,
        actor: AuditActor | None = None,
    ) -> WorkflowResult:
        repository, path = self.resolve(name)
        operator = operator_name or (actor.user_name if actor and actor.user_name else "System")
        return await self._audited(
            AuditCategory.GIT,
            AuditAction.GIT_PUSH,
            f"Push {repository} by {operator}",
            actor,
            lambda: self.issuer.push(repository, path, operator, actor),
        )

    async def commit_and_push(
        self, name: str, message: str, actor: AuditActor | None = None
    ) -> WorkflowResult:
        repository, path = self.resolve(name)
        return await self._audited(
            AuditCategory.GIT,
            AuditAction.GIT_PUSH,
            f"Commit+Push {repository} by {extract_author(message)}: {message}",
            actor,
            lambda: self.issuer.commit_and_push(repository, path, message, actor),
        )

    async def commit_all(
        self, message: str, actor: AuditActor | None = None
    ) -> dict[str, GitOperationResult]:
        """Commit in every valid repository that has changes."""
        overview = await self.all_status()
        results: dict[str, GitOperationResult] = {}
        for name, state in overview.repositories.items():
            if not state.is_valid:
                continue
            if not state.has_changes:
                results[name] = GitOperationResult(
                    success=True, message="No changes to commit", committed=False
                )
                continue
            try:
                results[name] = await self.commit(name, message, actor)
            except RepositoryOperationError as e:
                results[name] = GitOperationResult(success=False, message=e.message, output=e.diagnostic)
        return results

    async def push_all(self, actor: AuditActor | None = None) -> dict[str, WorkflowResult]:
        """Push (and certify) every valid repository with unpushed commits."""
        overview = await self.all_status()
        results: dict[str, WorkflowResult] = {}
        for name, state in overview.repositories.items():
            if not state.is_valid:
                continue
            if state.remote_url is None:
                results[name] = WorkflowResult(repository=name, message="No remote configured")
                continue
            # Without an upstream there is nothing to compare against, so push
            if state.has_upstream and state.commits_ahead == 0:
                results[name] = WorkflowResult(repository=name, message="Nothing to push")
                continue
            try:
                results[name] = await self.push(name, actor=actor)
            except RepositoryOperationError as e:
                results[name] = WorkflowResult(repository=name, message=e.message)
        return results

    async def discard(
        self, name: str, file_path: str | None = None, actor: AuditActor | None = None
    ) -> GitOperationResult:
        repository, path = self.resolve(name)
        logger.warning(
            "Discard requested",
            extra={"repository": repository, "file_path": file_path or "ALL"},
        )
        return await self._audited(
            AuditCategory.GIT,
            AuditAction.GIT_DISCARD,
            f"Discard changes in {repository}: {file_path or 'ALL'}",
            actor,
            lambda: self.git.discard(path, file_path),
        )

    async def revert(
        self, name: str, commit_hash: str, actor: AuditActor | None = None
    ) -> GitOperationResult:
        repository, path = self.resolve(name)
        logger.warning("Revert requested", extra={"repository": repository, "commit_hash": commit_hash})
        return await self._audited(
            AuditCategory.GIT,
            AuditAction.GIT_REVERT,
            f"Revert {repository} to {commit_hash}",
            actor,
            lambda: self.git.revert(path, commit_hash),
        )

    # Releases

    async def next_version(self, name: str) -> VersionPreview:
        """Version the next release would get; creates nothing."""
        repository, path = self.resolve(name)
        tags = await self.inspector.tags(path)
        return VersionPreview(
            repository=repository,
            next_version=self.allocator.next_version(repository, tags),
            existing_tags=len(tags),
        )

    async def create_release(
        self, name: str, message: str | None = None, actor: AuditActor | None = None
    ) -> ReleaseTag:
        """
        Allocate and create the next CalVer tag, then push tags.

        Raises:
            VersionExhaustedError: If the month's counter is used up
            PartialWorkflowFailure: If the tag was created but could not be pushed
        """
        repository, path = self.resolve(name)

        async def release() -> ReleaseTag:
            tag = await self.git.create_release_tag(path, repository, self.allocator, message)
            try:
                await self.git.push_tags(path)
            except RepositoryOperationError as e:
                raise PartialWorkflowFailure(
                    f"Tag {tag.version} created but push failed: {e.diagnostic or e.message}",
                    completed_steps=["tag"],
                    failed_step="push_tags",
                    resume_step="push_tags",
                    context={"repository": repository, "version": tag.version},
                ) from e
            return tag

        return await self._audited(
            AuditCategory.GIT,
            AuditAction.GIT_TAG,
            f"Release {repository}",
            actor,
            release,
        )

    # Certificates

    async def issue_integrity_certificate(
        self,
        names: list[str] | None = None,
        operator_name: str = "System",
        machine_id: str | None = None,
        actor: AuditActor | None = None,
    ) -> IntegrityCertificate:
        if names:
            targets = dict(self.resolve(n) for n in names)
        else:
            targets = dict(self.repositories)

        started = time.perf_counter()
        bundle = await self.issuer.issue_integrity_certificate(targets, operator_name, machine_id)
        await self.audit.record(
            AuditCategory.INTEGRITY,
            AuditAction.INTEGRITY_VERIFY,
            AuditResult.SUCCESS if bundle.all_clean else AuditResult.WARNING,
            details=f"Integrity certificate {bundle.certificate_id}: " + _summarize(bundle),
            actor=actor,
            additional_data={"certificate_id": bundle.certificate_id, "signature": bundle.signature},
            affected_item_count=len(bundle.repositories),
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        return bundle

    async def verify_certificate(
        self, certificate_id: str, actor: AuditActor | None = None
    ) -> CertificateVerification:
        certificate = await self.issuer.find_certificate(certificate_id)
        if certificate is None:
            raise CertificateNotFoundError(
                f"Certificate '{certificate_id}' not found",
                context={"certificate_id": certificate_id},
            )
        valid = self.issuer.verify_certificate(certificate)
        await self.audit.record(
            AuditCategory.CERTIFICATE,
            AuditAction.CERTIFICATE_VERIFY,
            AuditResult.SUCCESS if valid else AuditResult.FAILURE,
            details=f"Verified {certificate_id}: {'valid' if valid else 'INVALID'}",
            actor=actor,
        )
        return CertificateVerification(
            certificate_id=certificate_id,
            signature_valid=valid,
            verified_at=self._clock(),
            message="Integrity hash matches" if valid else "Integrity hash does not match certificate content",
        )

    async def verify_bundle(
        self, bundle: IntegrityCertificate, actor: AuditActor | None = None
    ) -> CertificateVerification:
        valid = self.issuer.verify_bundle(bundle)
        await self.audit.record(
            AuditCategory.CERTIFICATE,
            AuditAction.CERTIFICATE_VERIFY,
            AuditResult.SUCCESS if valid else AuditResult.FAILURE,
            details=f"Verified {bundle.certificate_id}: {'valid' if valid else 'INVALID'}",
            actor=actor,
        )
        return CertificateVerification(
            certificate_id=bundle.certificate_id,
            signature_valid=valid,
            verified_at=self._clock(),
            message="Signature matches" if valid else "Signature does not match certificate content",
        )

    async def deployment_certificates(
        self, repository: str | None = None, count: int = 50
    ) -> list[DeploymentCertificate]:
        return await self.issuer.list_certificates(repository, count)

    async def export_certificates(
        self,
        repository: str | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
        actor: AuditActor | None = None,
    ) -> CertificateExport:
        return await self._audited(
            AuditCategory.CERTIFICATE,
            AuditAction.CERTIFICATE_EXPORT,
            f"Export deployment certificates ({repository or 'ALL'})",
            actor,
            lambda: self.issuer.export_certificates(repository, from_time, to_time),
            affected_item_count=lambda export: export.total_certificates,
        )

    # Backups

    async def create_backup(
        self,
        name: str,
        machine_id: str | None = None,
        operator_name: str = "System",
        actor: AuditActor | None = None,
    ) -> tuple[bytes, BackupLogEntry]:
        repository, path = self.resolve(name)
        return await self._audited(
            AuditCategory.GIT,
            AuditAction.BACKUP_EXPORT,
            f"Backup export of {repository} by {operator_name}",
            actor,
            lambda: self.archiver.create_backup(repository, path, machine_id, operator_name),
        )

    async def backup_log(self, repository: str | None = None, count: int = 50) -> list[BackupLogEntry]:
        return await self.archiver.backup_log(repository, count)

    # Audit

    async def audit_query(self, query: AuditLogQuery) -> AuditLogPage:
        return await self.audit.query(query)

    async def audit_status(self) -> AuditLogStatus:
        return await self.audit.status()

    async def audit_summary(self, days: int = 7) -> AuditSummary:
        return await self.audit.summary(days)

    async def audit_export(
        self,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
        category: AuditCategory | None = None,
        actor: AuditActor | None = None,
    ) -> AuditExport:
        exported_by = actor.user_name if actor and actor.user_name else "System"
        export = await self.audit.export(from_time, to_time, category, exported_by)
        await self.audit.record(
            AuditCategory.SYSTEM,
            AuditAction.AUDIT_EXPORT,
            AuditResult.SUCCESS,
            details=f"Audit export of {export.total_entries} entries",
            actor=actor,
            affected_item_count=export.total_entries,
        )
        return export

    async def verify_audit_chain(
        self,
        start: int = 0,
        end: int | None = None,
        actor: AuditActor | None = None,
    ) -> ChainVerification:
        """
        Verify the audit chain.

        Raises:
            ChainIntegrityError: If any link is broken; the failure is itself audited
        """
        verification = await self.audit.verify_chain(start, end)
        if not verification.valid:
            await self.audit.record(
                AuditCategory.INTEGRITY,
                AuditAction.AUDIT_VERIFY,
                AuditResult.ERROR,
                details=f"Audit chain broken at {verification.broken_at}: {verification.reason}",
                actor=actor,
                affected_item_count=verification.checked_entries,
            )
            raise ChainIntegrityError(
                f"Audit chain broken at {verification.broken_at}: {verification.reason}",
                broken_at=verification.broken_at,
                context={"checked_entries": verification.checked_entries},
            )

        await self.audit.record(
            AuditCategory.INTEGRITY,
            AuditAction.AUDIT_VERIFY,
            AuditResult.SUCCESS,
            details=f"Audit chain verified ({verification.checked_entries} entries)",
            actor=actor,
            affected_item_count=verification.checked_entries,
        )
        return verification

    async def run_scheduled_verification(self) -> IntegrityCertificate:
        """Periodic check of every repository and of the audit chain."""
        bundle = await self.issuer.issue_integrity_certificate(dict(self.repositories))
        await self.audit.record(
            AuditCategory.INTEGRITY,
            AuditAction.INTEGRITY_AUTO_VERIFY,
            AuditResult.SUCCESS if bundle.all_clean else AuditResult.WARNING,
            details=_summarize(bundle),
            affected_item_count=len(bundle.repositories),
        )

        verification = await self.audit.verify_chain()
        if not verification.valid:
            await self.audit.record(
                AuditCategory.INTEGRITY,
                AuditAction.AUDIT_VERIFY,
                AuditResult.ERROR,
                details=f"Audit chain broken at {verification.broken_at}: {verification.reason}",
                affected_item_count=verification.checked_entries,
            )
        return bundle


def _summarize(bundle: IntegrityCertificate) -> str:
    parts = []
    for item in bundle.repositories:
        if item.status == IntegrityStatus.MODIFIED:
            parts.append(f"{item.repository}: MODIFIED ({item.modified_files_count} files)")
        elif item.status == IntegrityStatus.UNKNOWN:
            parts.append(f"{item.repository}: UNKNOWN ({item.error})")
        else:
            parts.append(f"{item.repository}: CLEAN")
    return ", ".join(parts) or "no repositories configured"


def _jsonable(context: dict[str, object]) -> dict[str, object]:
    return {k: v if isinstance(v, (str, int, float, bool, list, type(None))) else str(v) for k, v in context.items()}

