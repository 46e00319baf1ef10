import os
import tempfile
from pathlib import Path

import git
import pytest

# Minimal config BEFORE any import of certchain.main (it loads settings at import time)
_tmp_dir = tempfile.TemporaryDirectory(prefix="pytest_config_")
_config_file = Path(_tmp_dir.name) / "config.yaml"
_config_file.write_text(
    f"""
auth:
  token: test-token-123

logging:
  level: DEBUG
  use_json: false

machine_id: test-machine

storage:
  data_path: {_tmp_dir.name}/data

repositories: {{}}

integrity:
  verification_interval_seconds: 0

audit:
  retention_interval_seconds: 0
"""
)
os.environ["CONFIG_PATH"] = str(_config_file)

@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Valid authorization headers."""
    return {"Authorization": "Bearer test-token-123"}


@pytest.fixture(autouse=True)
async def reset_locks_after_test():
    """Reset the global lock registry so each test starts clean."""
    yield
    from certchain.services.lock import reset_locks_for_testing

    await reset_locks_for_testing()


def _configure(repo: git.Repo) -> None:
    with repo.config_writer() as config:
        config.set_value("user", "name", "Test Operator")
        config.set_value("user", "email", "operator@example.com")
        config.set_value("commit", "gpgsign", "false")
        config.set_value("tag", "gpgsign", "false")


def make_repository(root: Path, name: str = "backend", with_remote: bool = True) -> Path:
    """
    Create a repository with one commit, optionally pushed to a bare remote.

    Returns:
        Path of the working tree
    """
    work = root / name
    work.mkdir(parents=True)
    repo = git.Repo.init(work)
    _configure(repo)

    (work / "README.md").write_text("# test\n")
    repo.git.add("-A")
    repo.git.commit("-m", "Initial commit")

    if with_remote:
        remote = root / f"{name}.git"
        git.Repo.init(remote, bare=True)
        repo.create_remote("origin", str(remote))
        repo.git.push("--set-upstream", "origin", "HEAD")

    repo.close()
    return work


def commit_file(work: Path, relative: str, content: str, message: str = "Change") -> str:
    """Write a file, commit it and return the new HEAD hash."""
    target = work / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    with git.Repo(work) as repo:
        repo.git.add("-A")
        repo.git.commit("-m", message)
        return repo.git.rev_parse("HEAD").strip()


@pytest.fixture
def repository(tmp_path: Path) -> Path:
    """Working tree with an upstream on a local bare remote."""
    return make_repository(tmp_path)


@pytest.fixture
def local_repository(tmp_path: Path) -> Path:
    """Working tree without any remote."""
    return make_repository(tmp_path, name="frontend", with_remote=False)


@pytest.fixture
def locks():
    from certchain.services.lock import RepositoryLockRegistry

    return RepositoryLockRegistry()


@pytest.fixture
async def audit_chain(tmp_path: Path):
    from certchain.services.audit_chain import AuditChain

    chain = AuditChain(tmp_path / "audit")
    await chain.initialize()
    return chain


@pytest.fixture
def new_repository(tmp_path: Path):
    """Factory for additional repositories in the same temporary root."""

    def factory(name: str, with_remote: bool = True) -> Path:
        return make_repository(tmp_path, name=name, with_remote=with_remote)

    return factory


@pytest.fixture
def commit():
    """Commit helper: commit(work, relative_path, content, message) -> hash."""
    return commit_file


@pytest.fixture
def facade(tmp_path: Path, locks, audit_chain, repository: Path, local_repository: Path):
    """Facade over a pushed "Backend" repository and a remote-less "frontend"."""
    from certchain.models.backup import BackupLogEntry
    from certchain.models.certificate import DeploymentCertificate
    from certchain.services.backup import BackupArchiver
    from certchain.services.certificates import CertificateIssuer
    from certchain.services.facade import IntegrityFacade
    from certchain.services.git import GitService
    from certchain.services.inspector import RepositoryInspector
    from certchain.services.record_log import CappedRecordLog
    from certchain.services.versioning import VersionAllocator

    inspector = RepositoryInspector(locks)
    git_service = GitService(locks)
    issuer = CertificateIssuer(
        inspector,
        git_service,
        audit_chain,
        CappedRecordLog(tmp_path / "certificates.json", DeploymentCertificate, 200),
        machine_id="line-3",
    )
    archiver = BackupArchiver(
        inspector,
        locks,
        CappedRecordLog(tmp_path / "backup_log.json", BackupLogEntry, 100),
        machine_id="line-3",
    )
    return IntegrityFacade(
        {"Backend": str(repository), "frontend": str(local_repository)},
        inspector,
        git_service,
        VersionAllocator(),
        audit_chain,
        issuer,
        archiver,
    )
