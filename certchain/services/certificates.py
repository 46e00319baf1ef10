"""
Deployment and integrity certificates.

A deployment certificate is issued exactly once per successful push. It is
never issued for a failed push, and a failure to issue it never undoes the
push: the failure is recorded in the audit chain instead.
"""

from __future__ import annotations

import logging
import re
import socket
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from certchain.exceptions import CertChainError, PartialWorkflowFailure, RepositoryOperationError
from certchain.models.audit import AuditAction, AuditActor, AuditCategory, AuditResult, as_utc
from certchain.models.certificate import (
    CertificateAction,
    CertificateExport,
    DeploymentCertificate,
    IntegrityCertificate,
    IntegrityStatus,
    RepositoryIntegrity,
    WorkflowResult,
)
from certchain.models.repository import RepositoryState
from certchain.services.audit_chain import AuditChain
from certchain.services.git import GitService
from certchain.services.hashing import canonical_json, digest, digest_fields
from certchain.services.inspector import RepositoryInspector
from certchain.services.inventory import ComponentInventoryProvider, EmptyInventory
from certchain.services.record_log import CappedRecordLog

logger = logging.getLogger(__name__)

# "[Author: Jane Doe]" in a commit message names the operator; the older
# "[Autor: ...]" spelling is still accepted.
AUTHOR_PATTERN = re.compile(r"\[(?:Author|Autor):\s*([^\]]+)\]", re.IGNORECASE)
DEFAULT_OPERATOR = "System"
UNKNOWN = "unknown"


def extract_author(message: str | None) -> str:
    """Operator named in a commit message, or "System"."""
    if not message:
        return DEFAULT_OPERATOR
    match = AUTHOR_PATTERN.search(message)
    if match is None:
        return DEFAULT_OPERATOR
    return match.group(1).strip() or DEFAULT_OPERATOR


def certificate_id_for(repository: str, timestamp: datetime) -> str:
    return f"DEPLOY-{repository.upper()}-{timestamp:%Y%m%d-%H%M%S}"


def integrity_hash_for(commit_hash: str, repository: str, timestamp: datetime) -> str:
    return digest_fields(commit_hash, repository, f"{timestamp:%Y%m%d%H%M%S}")


def bundle_signature(bundle: IntegrityCertificate) -> str:
    return digest(canonical_json(bundle.model_dump(mode="json", exclude={"signature"})))


class CertificateIssuer:
    """Issues, stores and verifies certificates and runs the push workflows."""

    def __init__(
        self,
        inspector: RepositoryInspector,
        git_service: GitService,
        audit: AuditChain,
        certificate_log: CappedRecordLog[DeploymentCertificate],
        machine_id: str | None = None,
        inventory: ComponentInventoryProvider | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.inspector = inspector
        self.git = git_service
        self.audit = audit
        self.certificate_log = certificate_log
        self.machine_id = machine_id or socket.gethostname()
        self.inventory = inventory or EmptyInventory()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def on_push_succeeded(
        self,
        repository: str,
        state: RepositoryState,
        operator_name: str,
        description: str,
        action: CertificateAction = CertificateAction.PUSH,
    ) -> DeploymentCertificate:
        """
        Build and persist the deployment certificate for a completed push.

        Issuance is serialized by the certificate log; if the candidate id is
        already taken the timestamp advances one second until it is free.

        Raises:
            OSError: If the certificate log cannot be written
        """
        commit_hash = state.last_commit.hash if state.last_commit else UNKNOWN
        branch = state.current_branch or UNKNOWN

        def build(existing: list[DeploymentCertificate]) -> DeploymentCertificate:
            taken = {c.certificate_id for c in existing}
            timestamp = self._clock().astimezone(UTC).replace(microsecond=0)
            while certificate_id_for(repository, timestamp) in taken:
                timestamp += timedelta(seconds=1)
            return DeploymentCertificate(
                certificate_id=certificate_id_for(repository, timestamp),
                timestamp=timestamp,
                repository=repository,
                machine_id=self.machine_id,
                operator_name=operator_name,
                commit_hash=commit_hash,
                branch=branch,
                action=action,
                description=description,
                integrity_hash=integrity_hash_for(commit_hash, repository, timestamp),
            )

        certificate = await self.certificate_log.append_with(build)
        logger.info(
            "Deployment certificate issued",
            extra={
                "certificate_id": certificate.certificate_id,
                "repository": repository,
                "commit_hash": commit_hash,
                "operator": operator_name,
            },
        )
        return certificate

    async def _certify(
        self,
        repository: str,
        path: str | Path,
        operator_name: str,
        description: str,
        action: CertificateAction,
        actor: AuditActor | None = None,
    ) -> tuple[DeploymentCertificate | None, str | None]:
        """Certify a push that already succeeded; failures are audited, not raised."""
        try:
            state = await self.inspector.status(path, repository)
            certificate = await self.on_push_succeeded(
                repository, state, operator_name, description, action
            )
        except (CertChainError, OSError, ValueError) as e:
            logger.exception(
                "Deployment certificate generation failed",
                extra={"repository": repository, "error_type": type(e).__name__},
            )
            await self.audit.record(
                AuditCategory.CERTIFICATE,
                AuditAction.CERTIFICATE_GENERATE,
                AuditResult.ERROR,
                details=f"Certificate generation failed for {repository} after successful push: {e}",
                actor=actor,
            )
            return None, str(e)

        await self.audit.record(
            AuditCategory.CERTIFICATE,
            AuditAction.CERTIFICATE_GENERATE,
            AuditResult.SUCCESS,
            details=f"Deployment certificate {certificate.certificate_id} for {repository}",
            actor=actor,
            additional_data={
                "certificate_id": certificate.certificate_id,
                "commit_hash": certificate.commit_hash,
                "integrity_hash": certificate.integrity_hash,
            },
        )
        return certificate, None

    async def push(
        self,
        repository: str,
        path: str | Path,
        operator_name: str = DEFAULT_OPERATOR,
        actor: AuditActor | None = None,
    ) -> WorkflowResult:
        """
        Push, then certify.

        This is also the resume path after a commit-and-push whose push step
        failed.

        Raises:
            RepositoryOperationError: If the push fails (no certificate is issued)
        """
        result = await self.git.push(path)
        certificate, error = await self._certify(
            repository, path, operator_name, "Push to remote", CertificateAction.PUSH, actor
        )
        return WorkflowResult(
            repository=repository,
            message=result.message,
            commit_hash=certificate.commit_hash if certificate else result.commit_hash,
            certificate_id=certificate.certificate_id if certificate else None,
            certificate_error=error,
        )

    async def commit_and_push(
        self,
        repository: str,
        path: str | Path,
        message: str,
        actor: AuditActor | None = None,
    ) -> WorkflowResult:
        """
        Commit, push, certify.

        Raises:
            RepositoryOperationError: If the commit fails
            PartialWorkflowFailure: If the commit succeeded but the push failed;
                the commit stays and no certificate is issued
        """
        operator_name = extract_author(message)
        commit_result = await self.git.commit(path, message)

        try:
            await self.git.push(path)
        except RepositoryOperationError as e:
            raise PartialWorkflowFailure(
                f"Commit succeeded but push failed: {e.diagnostic or e.message}",
                completed_steps=["commit"],
                failed_step="push",
                resume_step="push",
                context={
                    "repository": repository,
                    "commit_hash": commit_result.commit_hash,
                    "diagnostic": e.diagnostic,
                },
            ) from e

        certificate, error = await self._certify(
            repository,
            path,
            operator_name,
            f"Commit+Push: {message}",
            CertificateAction.COMMIT_PUSH,
            actor,
        )
        return WorkflowResult(
            repository=repository,
            message="Committed and pushed" if commit_result.committed else "Nothing new to commit; pushed",
            commit_hash=commit_result.commit_hash
            or (certificate.commit_hash if certificate else None),
            certificate_id=certificate.certificate_id if certificate else None,
            certificate_error=error,
        )

    async def issue_integrity_certificate(
        self,
        repositories: dict[str, str | Path],
        operator_name: str = DEFAULT_OPERATOR,
        machine_id: str | None = None,
    ) -> IntegrityCertificate:
        """
        Signed snapshot of the integrity state of several repositories.

        A repository that cannot be queried gets status UNKNOWN and its own
        error; the others are still reported.
        """
        now = self._clock().astimezone(UTC).replace(microsecond=0)
        machine = machine_id or self.machine_id
        items = []

        for name, path in repositories.items():
            try:
                state = await self.inspector.status(path, name)
            except CertChainError as e:
                logger.warning(
                    "Repository unavailable for integrity certificate",
                    extra={"repository": name, "error": e.message},
                )
                items.append(
                    RepositoryIntegrity(repository=name, status=IntegrityStatus.UNKNOWN, error=e.message)
                )
                continue

            commit = state.last_commit
            items.append(
                RepositoryIntegrity(
                    repository=name,
                    status=IntegrityStatus.MODIFIED if state.has_changes else IntegrityStatus.CLEAN,
                    synced_with_remote=state.synced_with_remote,
                    branch=state.current_branch,
                    commit_hash=commit.hash if commit else None,
                    commit_message=commit.message if commit else None,
                    modified_files_count=len(state.modified_files),
                    commits_ahead=state.commits_ahead,
                    remote_url=state.remote_url,
                    verification_hash=digest_fields(
                        commit.hash if commit else "", state.current_branch, f"{now:%Y%m%d}"
                    ),
                )
            )

        try:
            components = await self.inventory.component_summaries()
        except (OSError, ValueError) as e:
            logger.warning(
                "Component inventory unavailable",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            components = []

        bundle = IntegrityCertificate(
            certificate_id=f"INTEGRITY-{machine}-{now:%Y%m%d-%H%M%S}",
            generated_at=now,
            machine_id=machine,
            operator_name=operator_name,
            repositories=items,
            components=components,
        )
        return bundle.model_copy(update={"signature": bundle_signature(bundle)})

    @staticmethod
    def verify_certificate(certificate: DeploymentCertificate) -> bool:
        """Recompute the id and integrity hash from the certificate's own fields."""
        timestamp = certificate.timestamp.astimezone(UTC)
        return certificate.certificate_id == certificate_id_for(
            certificate.repository, timestamp
        ) and certificate.integrity_hash == integrity_hash_for(
            certificate.commit_hash, certificate.repository, timestamp
        )

    @staticmethod
    def verify_bundle(bundle: IntegrityCertificate) -> bool:
        return bool(bundle.signature) and bundle.signature == bundle_signature(bundle)

    async def find_certificate(self, certificate_id: str) -> DeploymentCertificate | None:
        for certificate in await self.certificate_log.entries():
            if certificate.certificate_id == certificate_id:
                return certificate
        return None

    async def list_certificates(
        self, repository: str | None = None, count: int = 50
    ) -> list[DeploymentCertificate]:
        """Stored certificates, newest first."""

        def matches(c: DeploymentCertificate) -> bool:
            return repository is None or c.repository.lower() == repository.lower()

        return await self.certificate_log.recent(count, matches)

    async def export_certificates(
        self,
        repository: str | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
    ) -> CertificateExport:
        from_time, to_time = as_utc(from_time), as_utc(to_time)

        def matches(c: DeploymentCertificate) -> bool:
            if repository is not None and c.repository.lower() != repository.lower():
                return False
            if from_time is not None and c.timestamp < from_time:
                return False
            return not (to_time is not None and c.timestamp > to_time)

        certificates = await self.certificate_log.recent(None, matches)
        return CertificateExport(
            exported_at=self._clock(),
            machine_id=self.machine_id,
            total_certificates=len(certificates),
            filtered_by_repository=repository or "ALL",
            from_time=from_time,
            to_time=to_time,
            certificates=certificates,
        )
