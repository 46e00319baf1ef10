"""Repository operations, releases, backups and deployment certificate endpoints."""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field

from certchain.dependencies import get_actor, get_facade, verify_token
from certchain.exceptions import CertChainError
from certchain.models.audit import AuditActor
from certchain.models.backup import BackupLogEntry
from certchain.models.certificate import DeploymentCertificate, WorkflowResult
from certchain.models.release import ReleaseTag, VersionPreview
from certchain.models.repository import (
    CommitInfo,
    GitOperationResult,
    ModifiedFile,
    RepositoryOverview,
    RepositoryState,
)
from certchain.services.facade import IntegrityFacade
from certchain.utils.error_handling import http_exception_for
from certchain.utils.path_validation import sanitize_filename

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/git", dependencies=[Depends(verify_token)])


class CommitRequest(BaseModel):
    """Request model for commit and commit-and-push."""

    message: str = Field(
        min_length=1,
        max_length=2000,
        description="Commit message; '[Author: Name]' names the operator on the certificate",
    )


class DiscardRequest(BaseModel):
    """Request model for discarding changes."""

    file_path: str | None = Field(
        default=None,
        description="Path relative to the repository root (default: discard everything)",
    )


class RevertRequest(BaseModel):
    """Request model for a hard reset to a commit."""

    commit_hash: str = Field(description="Target commit (7 to 40 hex characters)")


class ReleaseRequest(BaseModel):
    """Request model for creating a release tag."""

    message: str | None = Field(default=None, description="Tag annotation (default: 'Release <version>')")


def _attachment(content: bytes | str, media_type: str, file_name: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.get("/status", response_model=RepositoryOverview)
async def get_all_status(facade: IntegrityFacade = Depends(get_facade)) -> RepositoryOverview:
    """Status of every configured repository."""
    return await facade.all_status()


@router.get("/status/{repo_name}", response_model=RepositoryState)
async def get_repository_status(
    repo_name: str,
    facade: IntegrityFacade = Depends(get_facade),
) -> RepositoryState:
    try:
        return await facade.repository_status(repo_name)
    except CertChainError as e:
        logger.warning(f"Status query failed for {repo_name}: {e.message}")
        raise http_exception_for(e) from e


@router.get("/history/{repo_name}", response_model=list[CommitInfo])
async def get_commit_history(
    repo_name: str,
    count: int = Query(default=20, ge=1, le=500),
    facade: IntegrityFacade = Depends(get_facade),
) -> list[CommitInfo]:
    try:
        return await facade.history(repo_name, count)
    except CertChainError as e:
        logger.warning(f"History query failed for {repo_name}: {e.message}")
        raise http_exception_for(e) from e


@router.get("/modified/{repo_name}", response_model=list[ModifiedFile])
async def get_modified_files(
    repo_name: str,
    facade: IntegrityFacade = Depends(get_facade),
) -> list[ModifiedFile]:
    try:
        return await facade.modified_files(repo_name)
    except CertChainError as e:
        logger.warning(f"Modified files query failed for {repo_name}: {e.message}")
        raise http_exception_for(e) from e


@router.post("/commit/{repo_name}", response_model=GitOperationResult)
async def commit_changes(
    repo_name: str,
    request: CommitRequest,
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> GitOperationResult:
    """
    Stage all changes and commit them locally.

    Note: This does NOT push to remote - use /push or /commit-and-push.
    """
    try:
        return await facade.commit(repo_name, request.message, actor)
    except CertChainError as e:
        logger.error(f"Git commit failed for {repo_name}: {e.message}")
        raise http_exception_for(e) from e


@router.post("/push/{repo_name}", response_model=WorkflowResult)
async def push_changes(
    repo_name: str,
    operator_name: str | None = Query(default=None, alias="operatorName"),
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> WorkflowResult:
    """
    Push committed changes and issue a deployment certificate.

    Also the way to resume a commit-and-push whose push step failed.
    """
    try:
        return await facade.push(repo_name, operator_name, actor)
    except CertChainError as e:
        logger.error(f"Git push failed for {repo_name}: {e.message}")
        raise http_exception_for(e) from e


@router.post("/commit-and-push/{repo_name}", response_model=WorkflowResult)
async def commit_and_push(
    repo_name: str,
    request: CommitRequest,
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> WorkflowResult:
    """
    Commit, push and certify.

    A failed push after a successful commit answers 409 with
    `failed_step="push"` and `resume_step="push"` in the error context.
    """
    try:
        return await facade.commit_and_push(repo_name, request.message, actor)
    except CertChainError as e:
        logger.error(f"Commit and push failed for {repo_name}: {e.message}")
        raise http_exception_for(e) from e


@router.post("/commit-all", response_model=dict[str, GitOperationResult])
async def commit_all(
    request: CommitRequest,
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> dict[str, GitOperationResult]:
    """Commit in every repository that has changes."""
    return await facade.commit_all(request.message, actor)


@router.post("/push-all", response_model=dict[str, WorkflowResult])
async def push_all(
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> dict[str, WorkflowResult]:
    """Push and certify every repository with unpushed commits."""
    return await facade.push_all(actor)


@router.post("/discard/{repo_name}", response_model=GitOperationResult)
async def discard_changes(
    repo_name: str,
    request: DiscardRequest | None = None,
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> GitOperationResult:
    file_path = request.file_path if request else None
    try:
        return await facade.discard(repo_name, file_path, actor)
    except CertChainError as e:
        logger.error(f"Discard failed for {repo_name}: {e.message}")
        raise http_exception_for(e) from e


@router.post("/revert/{repo_name}", response_model=GitOperationResult)
async def revert_to_commit(
    repo_name: str,
    request: RevertRequest,
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> GitOperationResult:
    """Hard-reset the repository to a commit. Uncommitted changes are lost."""
    try:
        return await facade.revert(repo_name, request.commit_hash, actor)
    except CertChainError as e:
        logger.error(f"Revert failed for {repo_name}: {e.message}")
        raise http_exception_for(e) from e


@router.get("/next-version/{repo_name}", response_model=VersionPreview)
async def get_next_version(
    repo_name: str,
    facade: IntegrityFacade = Depends(get_facade),
) -> VersionPreview:
    """Version the next release would receive. Creates nothing."""
    try:
        return await facade.next_version(repo_name)
    except CertChainError as e:
        raise http_exception_for(e) from e


@router.post("/release/{repo_name}", response_model=ReleaseTag)
async def create_release(
    repo_name: str,
    request: ReleaseRequest | None = None,
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> ReleaseTag:
    """Create and push the next YYYY.MM.NN tag."""
    try:
        return await facade.create_release(repo_name, request.message if request else None, actor)
    except CertChainError as e:
        logger.error(f"Release failed for {repo_name}: {e.message}")
        raise http_exception_for(e) from e


@router.get("/backup/{repo_name}")
async def download_backup(
    repo_name: str,
    machine_id: str | None = Query(default=None, alias="machineId"),
    operator_name: str = Query(default="System", alias="operatorName"),
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> Response:
    """ZIP with the repository's integrity certificate and source tree, for offline backup."""
    try:
        data, entry = await facade.create_backup(repo_name, machine_id, operator_name, actor)
    except CertChainError as e:
        logger.error(f"Backup failed for {repo_name}: {e.message}")
        raise http_exception_for(e) from e
    return _attachment(data, "application/zip", entry.file_name)


@router.get("/backup-log", response_model=list[BackupLogEntry])
async def get_backup_log(
    repository: str | None = None,
    count: int = Query(default=50, ge=1, le=1000),
    facade: IntegrityFacade = Depends(get_facade),
) -> list[BackupLogEntry]:
    return await facade.backup_log(repository, count)


@router.get("/deployment-certificates", response_model=list[DeploymentCertificate])
async def get_deployment_certificates(
    repository: str | None = None,
    count: int = Query(default=50, ge=1, le=1000),
    facade: IntegrityFacade = Depends(get_facade),
) -> list[DeploymentCertificate]:
    """Certificates issued on successful pushes, newest first."""
    return await facade.deployment_certificates(repository, count)


@router.get("/deployment-certificates/download")
async def download_deployment_certificates(
    repository: str | None = None,
    from_time: datetime | None = Query(default=None, alias="from"),
    to_time: datetime | None = Query(default=None, alias="to"),
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> Response:
    export = await facade.export_certificates(repository, from_time, to_time, actor)
    machine = sanitize_filename(export.machine_id)
    file_name = f"deployment_certificates_{machine}_{datetime.now(UTC):%Y-%m-%d}.json"
    return _attachment(export.model_dump_json(indent=2), "application/json", file_name)
