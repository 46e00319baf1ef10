"""Backup export models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class BackupReason(str, Enum):
    """Why a backup archive was produced."""

    MANUAL_EXPORT = "Manual Export"
    OFFLINE_BACKUP = "Offline Backup (pending commits)"


class BackupLogEntry(BaseModel):
    """One exported archive, as recorded in the backup log."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    timestamp: datetime
    repository: str
    machine_id: str
    operator_name: str
    file_name: str
    last_commit_hash: str
    branch: str
    was_synced_with_remote: bool
    reason: BackupReason
