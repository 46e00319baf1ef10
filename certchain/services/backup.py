"""Offline backup archives: integrity certificate plus the repository's source tree."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import os
import socket
import zipfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from certchain.models.backup import BackupLogEntry, BackupReason
from certchain.models.certificate import LEGAL_NOTICE, IntegrityStatus
from certchain.models.repository import RepositoryState
from certchain.services.hashing import digest_fields
from certchain.services.inspector import RepositoryInspector
from certchain.services.lock import RepositoryLockRegistry
from certchain.services.record_log import CappedRecordLog
from certchain.utils.path_validation import sanitize_filename

logger = logging.getLogger(__name__)

EXCLUDED_DIRS: dict[str, frozenset[str]] = {
    "backend": frozenset({"bin", "obj", ".git", ".vs", "node_modules", "packages"}),
    "frontend": frozenset({"node_modules", ".git", "build", "dist", ".cache", "coverage"}),
    "twincat": frozenset({".git", "_Boot", "_CompileInfo", "__Pou"}),
}
DEFAULT_EXCLUDED_DIRS = frozenset({".git", "bin", "obj", "node_modules"})
DEFAULT_EXCLUDED_EXTENSIONS = (".exe", ".dll", ".pdb", ".cache", ".log")
DEFAULT_MAX_FILE_BYTES = 5 * 1024 * 1024


def excluded_dirs_for(repository: str) -> frozenset[str]:
    return EXCLUDED_DIRS.get(repository.lower(), DEFAULT_EXCLUDED_DIRS)


@dataclass
class ArchiveResult:
    data: bytes
    archived: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def collect_source_files(
    root: Path,
    excluded_dirs: frozenset[str],
    excluded_extensions: tuple[str, ...],
    max_file_bytes: int,
) -> tuple[list[Path], list[str]]:
    """Eligible files under root (sorted) and the relative paths skipped for size."""
    eligible: list[Path] = []
    oversized: list[str] = []
    extensions = tuple(ext.lower() for ext in excluded_extensions)

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in excluded_dirs)
        for filename in sorted(filenames):
            full = Path(dirpath) / filename
            if full.is_symlink() or filename.lower().endswith(extensions):
                continue
            try:
                size = full.stat().st_size
            except OSError:
                size = 0
            if size > max_file_bytes:
                oversized.append(full.relative_to(root).as_posix())
                continue
            eligible.append(full)
    return eligible, oversized


class BackupArchiver:
    """Builds backup ZIPs and keeps the backup log."""

    def __init__(
        self,
        inspector: RepositoryInspector,
        locks: RepositoryLockRegistry,
        backup_log: CappedRecordLog[BackupLogEntry],
        machine_id: str | None = None,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        exclude_extensions: tuple[str, ...] = DEFAULT_EXCLUDED_EXTENSIONS,
        clock: Callable[[], datetime] | None = None,
    ):
        self.inspector = inspector
        self.locks = locks
        self.records = backup_log
        self.machine_id = machine_id or socket.gethostname()
        self.max_file_bytes = max_file_bytes
        self.exclude_extensions = tuple(exclude_extensions)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def create_backup(
        self,
        repository: str,
        path: str | Path,
        machine_id: str | None = None,
        operator_name: str = "System",
    ) -> tuple[bytes, BackupLogEntry]:
        """
        Build the backup archive for one repository.

        The archive holds `certificate_{repo}.json` and the eligible source
        files under `source_{repo}/`. Unreadable files are skipped and logged.

        Returns:
            (zip bytes, the backup log entry recorded for it)
        """
        machine = machine_id or self.machine_id
        now = self._clock().astimezone(UTC)

        logger.info(
            "Generating backup archive",
            extra={"repository": repository, "machine_id": machine, "operator": operator_name},
        )

        # One shared hold so the recorded state matches the archived tree
        async with self.locks.for_path(path).read():
            state = await self.inspector.status_under_lock(path, repository)
            result = await asyncio.to_thread(
                self._build_archive, repository, Path(path), state, machine, operator_name, now
            )

        file_name = (
            f"backup_{sanitize_filename(repository)}_{sanitize_filename(machine)}_"
            f"{now:%Y-%m-%d_%H%M%S}.zip"
        )
        entry = BackupLogEntry(
            timestamp=now,
            repository=repository,
            machine_id=machine,
            operator_name=operator_name,
            file_name=file_name,
            last_commit_hash=state.last_commit.hash if state.last_commit else "unknown",
            branch=state.current_branch or "unknown",
            was_synced_with_remote=state.commits_ahead == 0,
            reason=BackupReason.OFFLINE_BACKUP if state.commits_ahead > 0 else BackupReason.MANUAL_EXPORT,
        )

        try:
            await self.records.append(entry)
        except OSError as e:
            logger.warning(
                "Failed to record backup in backup log",
                extra={"repository": repository, "file_name": file_name, "error": str(e)},
            )

        logger.info(
            "Backup archive generated",
            extra={
                "file_name": file_name,
                "archived_files": len(result.archived),
                "skipped_files": len(result.skipped),
                "size_bytes": len(result.data),
            },
        )
        return result.data, entry

    def certificate_document(
        self,
        repository: str,
        state: RepositoryState,
        machine_id: str,
        operator_name: str,
        now: datetime,
    ) -> dict[str, Any]:
        commit = state.last_commit
        return {
            "certificate_type": "EU_CRA_Integrity_Certificate",
            "version": "1.0",
            "generated_at": now.isoformat(),
            "machine_id": machine_id,
            "operator_name": operator_name,
            "repository": {
                "name": repository.upper(),
                "path": state.path,
                "branch": state.current_branch,
                "last_commit": commit.model_dump(mode="json") if commit else None,
                "has_uncommitted_changes": state.has_changes,
                "modified_files_count": len(state.modified_files),
                "commits_pending_push": state.commits_ahead,
                "remote_url": state.remote_url,
                "is_valid": state.is_valid,
            },
            "integrity": {
                "status": (IntegrityStatus.MODIFIED if state.has_changes else IntegrityStatus.CLEAN).value,
                "synced_with_remote": state.synced_with_remote,
                "verification_hash": digest_fields(
                    commit.hash if commit else "", state.current_branch, f"{now:%Y%m%d}"
                ),
            },
            "legal_notice": LEGAL_NOTICE,
        }

    def _build_archive(
        self,
        repository: str,
        root: Path,
        state: RepositoryState,
        machine_id: str,
        operator_name: str,
        now: datetime,
    ) -> ArchiveResult:
        files, oversized = collect_source_files(
            root, excluded_dirs_for(repository), self.exclude_extensions, self.max_file_bytes
        )
        result = ArchiveResult(data=b"", skipped=list(oversized))
        prefix = f"source_{repository}"
        buffer = io.BytesIO()

        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            certificate = self.certificate_document(repository, state, machine_id, operator_name, now)
            archive.writestr(
                f"certificate_{repository}.json",
                json.dumps(certificate, indent=2, ensure_ascii=False),
            )

            for full in files:
                relative = full.relative_to(root).as_posix()
                try:
                    data = full.read_bytes()
                except OSError as e:
                    logger.warning(
                        "Skipping unreadable file",
                        extra={"repository": repository, "file": relative, "error": str(e)},
                    )
                    result.skipped.append(relative)
                    continue
                archive.writestr(f"{prefix}/{relative}", data)
                result.archived.append(relative)

        result.data = buffer.getvalue()
        return result

    async def backup_log(self, repository: str | None = None, count: int = 50) -> list[BackupLogEntry]:
        """Backup log entries, newest first."""

        def matches(entry: BackupLogEntry) -> bool:
            return repository is None or entry.repository.lower() == repository.lower()

        return await self.records.recent(count, matches)
