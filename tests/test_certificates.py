"""Tests for deployment and integrity certificates and the push workflows."""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import git
import pytest

from certchain.exceptions import PartialWorkflowFailure, RepositoryOperationError
from certchain.models.audit import AuditAction, AuditLogQuery, AuditResult
from certchain.models.certificate import CertificateAction, DeploymentCertificate, IntegrityStatus
from certchain.services.certificates import (
    CertificateIssuer,
    certificate_id_for,
    extract_author,
    integrity_hash_for,
)
from certchain.services.git import GitService
from certchain.services.hashing import digest
from certchain.services.inspector import RepositoryInspector
from certchain.services.inventory import JsonFileInventory
from certchain.services.record_log import CappedRecordLog

FIXED = datetime(2025, 3, 14, 9, 26, 53, 589000, tzinfo=UTC)


@pytest.fixture
def certificate_log(tmp_path: Path) -> CappedRecordLog[DeploymentCertificate]:
    return CappedRecordLog(tmp_path / "certificates.json", DeploymentCertificate, 200)


@pytest.fixture
def issuer(locks, audit_chain, certificate_log) -> CertificateIssuer:
    return CertificateIssuer(
        RepositoryInspector(locks),
        GitService(locks),
        audit_chain,
        certificate_log,
        machine_id="line-3",
    )


async def audit_entries(chain, action: AuditAction):
    return (await chain.query(AuditLogQuery(action=action))).entries


class TestHelpers:
    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("Fix sensor [Author: Jane Doe]", "Jane Doe"),
            ("[autor: Jürgen]  Umbau", "Jürgen"),
            ("[AUTHOR:   Max ] done", "Max"),
            ("No tag here", "System"),
            ("", "System"),
            (None, "System"),
            ("[Author: ]", "System"),
        ],
    )
    def test_extract_author(self, message, expected) -> None:
        assert extract_author(message) == expected

    def test_certificate_id_format(self) -> None:
        assert certificate_id_for("backend", FIXED) == "DEPLOY-BACKEND-20250314-092653"

    def test_integrity_hash(self) -> None:
        expected = digest("abc123|backend|20250314092653")
        assert integrity_hash_for("abc123", "backend", FIXED) == expected


class TestCommitAndPush:
    async def test_success_issues_one_certificate(self, issuer, repository: Path, certificate_log, audit_chain) -> None:
        (repository / "main.c").write_text("int main() {}\n")

        result = await issuer.commit_and_push("backend", repository, "Add main [Author: Jane Doe]")

        certificates = await certificate_log.entries()
        assert len(certificates) == 1
        certificate = certificates[0]
        assert result.certificate_id == certificate.certificate_id
        assert result.certificate_error is None
        assert certificate.operator_name == "Jane Doe"
        assert certificate.action == CertificateAction.COMMIT_PUSH
        assert certificate.description == "Commit+Push: Add main [Author: Jane Doe]"
        assert certificate.machine_id == "line-3"
        with git.Repo(repository) as repo:
            assert certificate.commit_hash == repo.git.rev_parse("HEAD").strip()
        assert CertificateIssuer.verify_certificate(certificate)

        generated = await audit_entries(audit_chain, AuditAction.CERTIFICATE_GENERATE)
        assert [e.result for e in generated] == [AuditResult.SUCCESS]

    async def test_push_failure_after_commit_issues_no_certificate(
        self, issuer, local_repository: Path, certificate_log, tmp_path: Path
    ) -> None:
        (local_repository / "main.c").write_text("int main() {}\n")

        with pytest.raises(PartialWorkflowFailure) as exc_info:
            await issuer.commit_and_push("frontend", local_repository, "Add main")

        error = exc_info.value
        assert error.completed_steps == ["commit"]
        assert error.failed_step == "push"
        assert error.resume_step == "push"
        assert error.context["commit_hash"]
        assert await certificate_log.entries() == []

        # The commit stays; resuming with push certifies exactly once
        remote = tmp_path / "frontend.git"
        git.Repo.init(remote, bare=True).close()
        with git.Repo(local_repository) as repo:
            repo.create_remote("origin", str(remote))

        result = await issuer.push("frontend", local_repository, "Jane")

        certificates = await certificate_log.entries()
        assert len(certificates) == 1
        assert certificates[0].commit_hash == error.context["commit_hash"]
        assert certificates[0].action == CertificateAction.PUSH
        assert result.certificate_id == certificates[0].certificate_id

    async def test_push_failure_raises_without_certificate(self, issuer, local_repository: Path, certificate_log) -> None:
        with pytest.raises(RepositoryOperationError):
            await issuer.push("frontend", local_repository)
        assert await certificate_log.entries() == []

    async def test_certificate_failure_does_not_undo_push(
        self, issuer, repository: Path, certificate_log, audit_chain, commit, monkeypatch
    ) -> None:
        commit(repository, "a.txt", "a", "Local work")

        async def broken_append_with(build):
            raise OSError("disk full")

        monkeypatch.setattr(certificate_log, "append_with", broken_append_with)

        result = await issuer.push("backend", repository)

        assert result.certificate_id is None
        assert "disk full" in result.certificate_error
        state = await issuer.inspector.status(repository)
        assert state.commits_ahead == 0

        generated = await audit_entries(audit_chain, AuditAction.CERTIFICATE_GENERATE)
        assert [e.result for e in generated] == [AuditResult.ERROR]


class TestCertificateIds:
    async def test_same_second_gets_next_free_id(self, locks, audit_chain, certificate_log, repository: Path, commit) -> None:
        issuer = CertificateIssuer(
            RepositoryInspector(locks),
            GitService(locks),
            audit_chain,
            certificate_log,
            machine_id="line-3",
            clock=lambda: FIXED,
        )
        commit(repository, "a.txt", "a", "One")
        await issuer.push("backend", repository)
        commit(repository, "b.txt", "b", "Two")
        await issuer.push("backend", repository)

        ids = [c.certificate_id for c in await certificate_log.entries()]
        assert ids == ["DEPLOY-BACKEND-20250314-092653", "DEPLOY-BACKEND-20250314-092654"]
        assert all(CertificateIssuer.verify_certificate(c) for c in await certificate_log.entries())

    async def test_tampered_certificate_fails_verification(self, issuer, repository: Path, certificate_log, commit) -> None:
        commit(repository, "a.txt", "a", "One")
        await issuer.push("backend", repository)
        certificate = (await certificate_log.entries())[0]

        tampered = certificate.model_copy(update={"commit_hash": "0" * 40})
        assert not CertificateIssuer.verify_certificate(tampered)

    async def test_list_and_export(self, issuer, repository: Path, new_repository, commit) -> None:
        other = new_repository("twincat")
        commit(repository, "a.txt", "a", "One")
        await issuer.push("backend", repository)
        commit(other, "b.txt", "b", "Two")
        await issuer.push("twincat", other)

        assert [c.repository for c in await issuer.list_certificates()] == ["twincat", "backend"]
        assert [c.repository for c in await issuer.list_certificates("BACKEND")] == ["backend"]

        export = await issuer.export_certificates("twincat")
        assert export.total_certificates == 1
        assert export.filtered_by_repository == "twincat"

        future = await issuer.export_certificates(from_time=datetime.now(UTC) + timedelta(days=1))
        assert future.total_certificates == 0

        found = await issuer.find_certificate(export.certificates[0].certificate_id)
        assert found == export.certificates[0]
        assert await issuer.find_certificate("DEPLOY-NOPE") is None


class TestIntegrityCertificate:
    async def test_mixed_repositories(self, issuer, repository: Path, tmp_path: Path) -> None:
        (repository / "README.md").write_text("dirty\n")

        bundle = await issuer.issue_integrity_certificate(
            {"backend": repository, "missing": tmp_path / "nowhere"}, operator_name="Jane"
        )

        by_name = {r.repository: r for r in bundle.repositories}
        assert by_name["backend"].status == IntegrityStatus.MODIFIED
        assert by_name["backend"].modified_files_count == 1
        assert by_name["backend"].synced_with_remote
        assert by_name["missing"].status == IntegrityStatus.UNKNOWN
        assert by_name["missing"].error
        assert not bundle.all_clean
        assert bundle.operator_name == "Jane"
        assert bundle.certificate_id.startswith("INTEGRITY-line-3-")
        assert CertificateIssuer.verify_bundle(bundle)

    async def test_tampered_bundle_fails_verification(self, issuer, repository: Path) -> None:
        bundle = await issuer.issue_integrity_certificate({"backend": repository})
        assert bundle.all_clean

        tampered = bundle.model_copy(update={"operator_name": "Mallory"})
        assert not CertificateIssuer.verify_bundle(tampered)
        assert not CertificateIssuer.verify_bundle(bundle.model_copy(update={"signature": ""}))

    async def test_components_from_inventory(self, locks, audit_chain, certificate_log, repository: Path, tmp_path: Path) -> None:
        summary = tmp_path / "sbom.json"
        summary.write_text(
            json.dumps({"components": [{"component_name": "backend", "version": "2025.03.01", "vulnerability_count": 2}]})
        )
        issuer = CertificateIssuer(
            RepositoryInspector(locks),
            GitService(locks),
            audit_chain,
            certificate_log,
            inventory=JsonFileInventory(summary),
        )

        bundle = await issuer.issue_integrity_certificate({"backend": repository})

        assert [(c.component_name, c.vulnerability_count) for c in bundle.components] == [("backend", 2)]

    async def test_broken_inventory_does_not_block(self, locks, audit_chain, certificate_log, repository: Path, tmp_path: Path) -> None:
        summary = tmp_path / "sbom.json"
        summary.write_text("{broken")
        issuer = CertificateIssuer(
            RepositoryInspector(locks),
            GitService(locks),
            audit_chain,
            certificate_log,
            inventory=JsonFileInventory(summary),
        )

        bundle = await issuer.issue_integrity_certificate({"backend": repository})

        assert bundle.components == []
        assert CertificateIssuer.verify_bundle(bundle)
