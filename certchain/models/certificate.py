"""Deployment and integrity certificate models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

LEGAL_NOTICE = (
    "This certificate attests the software integrity state at generation time "
    "per EU Cyber Resilience Act requirements."
)


class CertificateAction(str, Enum):
    """What produced a deployment certificate."""

    PUSH = "Push"
    COMMIT_PUSH = "Commit+Push"


class IntegrityStatus(str, Enum):
    """Working-tree classification for the on-demand certificate."""

    CLEAN = "CLEAN"
    MODIFIED = "MODIFIED"
    UNKNOWN = "UNKNOWN"


class DeploymentCertificate(BaseModel):
    """Record asserting a commit was pushed by an operator at an instant."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    certificate_id: str
    timestamp: datetime
    repository: str
    machine_id: str
    operator_name: str
    commit_hash: str
    branch: str
    action: CertificateAction
    description: str
    integrity_hash: str


class ComponentSummary(BaseModel):
    """SBOM / vulnerability summary supplied by an inventory provider."""

    model_config = ConfigDict(extra="ignore")

    component_name: str
    version: str
    vulnerability_count: int = 0


class RepositoryIntegrity(BaseModel):
    """Per-repository section of an on-demand integrity certificate."""

    repository: str
    status: IntegrityStatus
    synced_with_remote: bool = False
    branch: str | None = None
    commit_hash: str | None = None
    commit_message: str | None = None
    modified_files_count: int = 0
    commits_ahead: int = 0
    remote_url: str | None = None
    verification_hash: str | None = None
    error: str | None = None


class IntegrityCertificate(BaseModel):
    """On-demand certificate covering several repositories."""

    certificate_type: str = "EU_CRA_Integrity_Certificate"
    version: str = "1.0"
    certificate_id: str
    generated_at: datetime
    machine_id: str
    operator_name: str
    repositories: list[RepositoryIntegrity]
    components: list[ComponentSummary] = Field(default_factory=list)
    legal_notice: str = LEGAL_NOTICE
    signature: str = ""

    @property
    def all_clean(self) -> bool:
        return all(r.status == IntegrityStatus.CLEAN for r in self.repositories)


class WorkflowResult(BaseModel):
    """Success payload of push and commit-and-push."""

    repository: str
    message: str
    commit_hash: str | None = None
    certificate_id: str | None = None
    certificate_error: str | None = Field(
        default=None,
        description="Set when the push succeeded but certification did not",
    )


class CertificateVerification(BaseModel):
    """Outcome of recomputing a certificate digest."""

    certificate_id: str
    signature_valid: bool
    verified_at: datetime
    message: str


class CertificateExport(BaseModel):
    """Downloadable certificate history."""

    exported_at: datetime
    machine_id: str
    total_certificates: int
    filtered_by_repository: str
    from_time: datetime | None = None
    to_time: datetime | None = None
    legal_notice: str = "EU Cyber Resilience Act - Deployment Audit Trail"
    certificates: list[DeploymentCertificate]
