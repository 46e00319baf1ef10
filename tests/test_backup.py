"""Tests for offline backup archives and the backup log."""

import io
import json
import zipfile
from datetime import UTC, datetime
from pathlib import Path

import git
import pytest

from certchain.models.backup import BackupLogEntry, BackupReason
from certchain.services.backup import BackupArchiver, collect_source_files, excluded_dirs_for
from certchain.services.inspector import RepositoryInspector
from certchain.services.record_log import CappedRecordLog

NOW = datetime(2025, 5, 2, 14, 30, 5, tzinfo=UTC)


@pytest.fixture
def backup_log(tmp_path: Path) -> CappedRecordLog[BackupLogEntry]:
    return CappedRecordLog(tmp_path / "backup_log.json", BackupLogEntry, 100)


@pytest.fixture
def archiver(locks, backup_log) -> BackupArchiver:
    return BackupArchiver(
        RepositoryInspector(locks),
        locks,
        backup_log,
        machine_id="line 3/plc",
        max_file_bytes=1024,
        clock=lambda: NOW,
    )


def names_in(data: bytes) -> list[str]:
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        return sorted(archive.namelist())


class TestCollectSourceFiles:
    def test_excludes_dirs_extensions_and_oversized(self, tmp_path: Path) -> None:
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "a.cs").write_text("a")
        (tmp_path / "bin").mkdir()
        (tmp_path / "bin" / "out.txt").write_text("x")
        (tmp_path / "app.exe").write_bytes(b"MZ")
        (tmp_path / "BUILD.LOG").write_text("log")
        (tmp_path / "big.bin").write_bytes(b"0" * 2048)

        files, oversized = collect_source_files(tmp_path, excluded_dirs_for("backend"), (".exe", ".log"), 1024)

        assert [f.relative_to(tmp_path).as_posix() for f in files] == ["src/a.cs"]
        assert oversized == ["big.bin"]

    def test_unknown_repository_uses_default_exclusions(self) -> None:
        assert ".git" in excluded_dirs_for("something-else")
        assert "_Boot" in excluded_dirs_for("TwinCAT")


class TestCreateBackup:
    async def test_archive_contents_and_log_entry(self, archiver, repository: Path, backup_log) -> None:
        (repository / "src").mkdir()
        (repository / "src" / "one.py").write_text("1")
        (repository / "src" / "two.py").write_text("2")
        (repository / "huge.dat").write_bytes(b"0" * 4096)

        data, entry = await archiver.create_backup("backend", repository, operator_name="Jane")

        assert names_in(data) == [
            "certificate_backend.json",
            "source_backend/README.md",
            "source_backend/src/one.py",
            "source_backend/src/two.py",
        ]
        assert entry.reason == BackupReason.MANUAL_EXPORT
        assert entry.was_synced_with_remote
        assert entry.operator_name == "Jane"
        assert entry.file_name == "backup_backend_line_3_plc_2025-05-02_143005.zip"
        assert await backup_log.entries() == [entry]

    async def test_certificate_document(self, archiver, repository: Path) -> None:
        data, _ = await archiver.create_backup("backend", repository)

        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            certificate = json.loads(archive.read("certificate_backend.json"))

        assert certificate["certificate_type"] == "EU_CRA_Integrity_Certificate"
        assert certificate["repository"]["name"] == "BACKEND"
        assert certificate["integrity"]["status"] == "CLEAN"
        assert certificate["integrity"]["synced_with_remote"] is True
        assert len(certificate["integrity"]["verification_hash"]) == 64
        assert certificate["machine_id"] == "line 3/plc"

    async def test_pending_commits_mark_offline_backup(self, archiver, repository: Path, commit) -> None:
        commit(repository, "a.txt", "a", "Not pushed")

        _, entry = await archiver.create_backup("backend", repository)

        assert entry.reason == BackupReason.OFFLINE_BACKUP
        assert not entry.was_synced_with_remote

    async def test_state_read_inside_archive_read_hold(
        self, archiver, repository: Path, locks, monkeypatch
    ) -> None:
        readers_during_state_read = []
        original = archiver.inspector.status_under_lock

        async def recording_status(path, name=None):
            readers_during_state_read.append(locks.for_path(path).readers)
            return await original(path, name)

        monkeypatch.setattr(archiver.inspector, "status_under_lock", recording_status)

        _, entry = await archiver.create_backup("backend", repository)

        assert readers_during_state_read == [1]
        assert locks.for_path(repository).readers == 0
        with git.Repo(repository) as repo:
            assert entry.last_commit_hash == repo.head.commit.hexsha

    async def test_backup_log_survives_log_write_failure(self, archiver, repository: Path, backup_log, monkeypatch) -> None:
        async def broken_append(entry):
            raise OSError("read-only file system")

        monkeypatch.setattr(backup_log, "append", broken_append)

        data, entry = await archiver.create_backup("backend", repository)

        assert data
        assert entry.repository == "backend"

    async def test_backup_log_filter(self, archiver, repository: Path, new_repository) -> None:
        other = new_repository("twincat")
        await archiver.create_backup("backend", repository)
        await archiver.create_backup("twincat", other)

        assert [e.repository for e in await archiver.backup_log()] == ["twincat", "backend"]
        assert [e.repository for e in await archiver.backup_log("TWINCAT")] == ["twincat"]
