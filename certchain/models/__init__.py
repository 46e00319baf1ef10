"""Models for certchain."""

from certchain.models.audit import (
    AuditAction,
    AuditActor,
    AuditCategory,
    AuditLogEntry,
    AuditLogPage,
    AuditLogQuery,
    AuditResult,
    ChainVerification,
)
from certchain.models.backup import BackupLogEntry, BackupReason
from certchain.models.certificate import (
    CertificateAction,
    ComponentSummary,
    DeploymentCertificate,
    IntegrityCertificate,
    IntegrityStatus,
    RepositoryIntegrity,
    WorkflowResult,
)
from certchain.models.release import ReleaseTag
from certchain.models.repository import (
    ChangeKind,
    CommitInfo,
    GitOperationResult,
    ModifiedFile,
    RepositoryState,
)

__all__ = [
    "AuditAction",
    "AuditActor",
    "AuditCategory",
    "AuditLogEntry",
    "AuditLogPage",
    "AuditLogQuery",
    "AuditResult",
    "BackupLogEntry",
    "BackupReason",
    "CertificateAction",
    "ChainVerification",
    "ChangeKind",
    "CommitInfo",
    "ComponentSummary",
    "DeploymentCertificate",
    "GitOperationResult",
    "IntegrityCertificate",
    "IntegrityStatus",
    "ModifiedFile",
    "ReleaseTag",
    "RepositoryIntegrity",
    "RepositoryState",
    "WorkflowResult",
]
