"""Audit log models: categories, actions, chained entries and query types."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AuditCategory(str, Enum):
    """Top-level grouping of audited events."""

    INTEGRITY = "Integrity"
    SBOM = "Sbom"
    VULNERABILITY = "Vulnerability"
    AUTHENTICATION = "Authentication"
    CONFIGURATION = "Configuration"
    GIT = "Git"
    CERTIFICATE = "Certificate"
    SYSTEM = "System"


class AuditAction(str, Enum):
    """Concrete audited operations."""

    # Integrity
    INTEGRITY_VERIFY = "IntegrityVerify"
    INTEGRITY_AUTO_VERIFY = "IntegrityAutoVerify"
    AUDIT_VERIFY = "AuditVerify"

    # SBOM / vulnerabilities
    SBOM_GENERATE = "SbomGenerate"
    SBOM_EXPORT = "SbomExport"
    SBOM_VIEW = "SbomView"
    VULNERABILITY_SCAN = "VulnerabilityScan"
    VULNERABILITY_REPORT = "VulnerabilityReport"
    VULNERABILITY_EXPORT = "VulnerabilityExport"

    # Authentication and user management
    LOGIN = "Login"
    LOGOUT = "Logout"
    LOGIN_FAILED = "LoginFailed"
    ACCOUNT_LOCKED = "AccountLocked"
    ACCOUNT_UNLOCKED = "AccountUnlocked"
    LOGOUT_ALL_SESSIONS = "LogoutAllSessions"
    PASSWORD_CHANGED = "PasswordChanged"
    PASSWORD_CHANGE_FAILED = "PasswordChangeFailed"
    PASSWORD_RESET = "PasswordReset"
    USER_CREATED = "UserCreated"
    USER_UPDATED = "UserUpdated"
    USER_DELETED = "UserDeleted"
    ADMIN_CREATED = "AdminCreated"

    # Configuration
    CONFIG_CHANGE = "ConfigChange"
    CONFIG_LOAD = "ConfigLoad"

    # Git
    GIT_COMMIT = "GitCommit"
    GIT_PUSH = "GitPush"
    GIT_PULL = "GitPull"
    GIT_DISCARD = "GitDiscard"
    GIT_REVERT = "GitRevert"
    GIT_TAG = "GitTag"
    BACKUP_EXPORT = "BackupExport"

    # Certificates
    CERTIFICATE_GENERATE = "CertificateGenerate"
    CERTIFICATE_REVOKE = "CertificateRevoke"
    CERTIFICATE_VERIFY = "CertificateVerify"
    CERTIFICATE_EXPORT = "CertificateExport"

    # System
    SYSTEM_START = "SystemStart"
    SYSTEM_STOP = "SystemStop"
    SERVICE_START = "ServiceStart"
    SERVICE_STOP = "ServiceStop"
    AUDIT_EXPORT = "AuditExport"
    AUDIT_RETENTION = "AuditRetention"


class AuditResult(str, Enum):
    """Outcome of an audited operation."""

    SUCCESS = "Success"
    WARNING = "Warning"
    FAILURE = "Failure"
    ERROR = "Error"


def _new_entry_id() -> str:
    return str(uuid.uuid4())


def _utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC so stored and queried times compare."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class AuditLogEntry(BaseModel):
    """A single hash-chained audit record.

    `previous_hash` and `signature` are empty until the entry has been
    appended; the chain fills them in.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(default_factory=_new_entry_id)
    timestamp: datetime = Field(default_factory=_utc_now)
    category: AuditCategory
    action: AuditAction
    result: AuditResult
    user_id: str | None = None
    user_name: str | None = None
    ip_address: str | None = None
    details: str | None = None
    additional_data: str | None = None
    affected_item_count: int | None = None
    duration_ms: float | None = None
    previous_hash: str = ""
    signature: str = ""

    @field_validator("timestamp")
    @classmethod
    def timestamp_as_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


@dataclass(frozen=True)
class AuditActor:
    """Who triggered an audited operation, when attributable."""

    user_id: str | None = None
    user_name: str | None = None
    ip_address: str | None = None


class AuditLogQuery(BaseModel):
    """Filter and paging parameters for audit queries."""

    from_time: datetime | None = None
    to_time: datetime | None = None
    category: AuditCategory | None = None
    action: AuditAction | None = None
    result: AuditResult | None = None
    user_id: str | None = None
    skip: int = Field(default=0, ge=0)
    take: int = Field(default=100, ge=1, le=1000)

    @field_validator("from_time", "to_time")
    @classmethod
    def bounds_as_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)


class AuditLogPage(BaseModel):
    """One page of audit entries, newest first."""

    entries: list[AuditLogEntry]
    total_count: int
    page: int
    page_size: int
    has_more: bool


class ChainVerification(BaseModel):
    """Result of recomputing the chain over a range of entries."""

    valid: bool
    broken_at: str | None = None
    checked_entries: int = 0
    reason: str | None = None
    anchor: str = ""


class AuditLogStatus(BaseModel):
    """Storage and content statistics for the audit chain."""

    storage_path: str
    total_entries: int
    segment_count: int
    storage_size_bytes: int
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
    last_signature: str
    retention_days: int
    max_entries_per_segment: int
    entries_by_category: dict[str, int] = Field(default_factory=dict)
    entries_by_result: dict[str, int] = Field(default_factory=dict)


class AuditSummary(BaseModel):
    """Aggregated view of recent audit activity."""

    generated_at: datetime = Field(default_factory=_utc_now)
    total_entries: int
    period_start: datetime
    period_end: datetime
    by_category: dict[str, int] = Field(default_factory=dict)
    by_result: dict[str, int] = Field(default_factory=dict)
    by_day: dict[str, int] = Field(default_factory=dict)
    recent_failures: list[AuditLogEntry] = Field(default_factory=list)


class AuditExport(BaseModel):
    """Downloadable export of a slice of the chain."""

    exported_at: datetime
    exported_by: str
    from_time: datetime | None
    to_time: datetime | None
    total_entries: int
    verification: ChainVerification
    entries: list[dict[str, Any]]
