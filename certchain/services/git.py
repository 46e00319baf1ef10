import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

import git

from certchain.exceptions import RepositoryOperationError, ValidationError
from certchain.models.release import ReleaseTag
from certchain.models.repository import GitOperationResult
from certchain.services.inspector import git_diagnostic, open_repository, read_tags
from certchain.services.lock import RepositoryLockRegistry, run_serialized
from certchain.services.versioning import VersionAllocator
from certchain.utils.path_validation import (
    PathValidationError,
    validate_commit_hash,
    validate_repository_relative_path,
)

logger = logging.getLogger(__name__)

__all__ = ["GitService", "RepositoryOperationError"]

T = TypeVar("T")

# Prevent interactive credential prompts from hanging a request
_NO_PROMPT = {"GIT_TERMINAL_PROMPT": "0"}


class GitService:
    """
    Mutating git operations on configured repositories.

    Every operation holds the repository's exclusive lock for its whole
    duration and runs in a worker thread. Failures raise
    RepositoryOperationError naming the failed step and carrying git's raw
    diagnostic. Nothing is retried.
    """

    def __init__(
        self,
        locks: RepositoryLockRegistry,
        timeout_seconds: float = 30,
        push_timeout_seconds: float | None = None,
    ):
        self.locks = locks
        self.timeout_seconds = timeout_seconds
        self.push_timeout_seconds = push_timeout_seconds or timeout_seconds * 4

    async def commit(self, path: str | Path, message: str) -> GitOperationResult:
        """
        Stage every change (`add -A`) and commit it.

        A clean working tree is not an error: the result has committed=False.
        """
        if not message or not message.strip():
            raise ValidationError("Commit message must not be empty", context={"path": str(path)})

        def run() -> GitOperationResult:
            with open_repository(path) as repo:
                repo.git.add("-A")
                if not repo.git.status("--porcelain").strip():
                    return GitOperationResult(
                        success=True,
                        message="Nothing to commit - working tree clean",
                        committed=False,
                    )
                output = repo.git.commit("-m", message)
                commit_hash = repo.git.rev_parse("HEAD").strip()
                logger.info(
                    "Git commit completed",
                    extra={"path": str(path), "commit_hash": commit_hash},
                )
                return GitOperationResult(
                    success=True,
                    message=f"Committed {commit_hash[:7]}",
                    output=output,
                    commit_hash=commit_hash,
                )

        return await self._mutate(path, "commit", run)

    async def push(self, path: str | Path) -> GitOperationResult:
        """
        Push the current branch to origin.

        A branch without an upstream is pushed with --set-upstream.
        """

        def run() -> GitOperationResult:
            with open_repository(path) as repo, repo.git.custom_environment(**_NO_PROMPT):
                args: list[str] = []
                try:
                    repo.git.rev_parse("--abbrev-ref", "--symbolic-full-name", "@{upstream}")
                except git.GitCommandError:
                    branch = repo.git.rev_parse("--abbrev-ref", "HEAD").strip()
                    args = ["--set-upstream", "origin", branch]
                _, stdout, stderr = repo.git.push(*args, with_extended_output=True)
                commit_hash = repo.git.rev_parse("HEAD").strip()
                logger.info(
                    "Git push completed",
                    extra={"path": str(path), "commit_hash": commit_hash},
                )
                return GitOperationResult(
                    success=True,
                    message="Pushed to remote",
                    output=(stdout or stderr or "").strip(),
                    commit_hash=commit_hash,
                )

        return await self._mutate(path, "push", run, timeout=self.push_timeout_seconds)

    async def discard(self, path: str | Path, file_path: str | None = None) -> GitOperationResult:
        """Discard working-tree changes: one tracked file, or everything including untracked files."""
        target: str | None = None
        if file_path:
            try:
                target = validate_repository_relative_path(file_path, Path(path))
            except PathValidationError as e:
                raise ValidationError(
                    str(e), context={"path": str(path), "file_path": file_path}
                ) from e

        def run() -> GitOperationResult:
            with open_repository(path) as repo:
                if target is None:
                    repo.git.checkout("--", ".")
                    output = repo.git.clean("-fd")
                else:
                    output = repo.git.checkout("--", target)
                logger.warning(
                    "Working tree changes discarded",
                    extra={"path": str(path), "file_path": target or "ALL"},
                )
                return GitOperationResult(
                    success=True, message="Changes discarded successfully", output=output
                )

        return await self._mutate(path, "discard", run)

    async def revert(self, path: str | Path, commit_hash: str) -> GitOperationResult:
        """Hard-reset the current branch to commit_hash."""
        try:
            target = validate_commit_hash(commit_hash)
        except PathValidationError as e:
            raise ValidationError(
                str(e), context={"path": str(path), "commit_hash": commit_hash}
            ) from e

        def run() -> GitOperationResult:
            with open_repository(path) as repo:
                logger.warning("Reverting to commit", extra={"path": str(path), "commit_hash": target})
                output = repo.git.reset("--hard", target)
                head = repo.git.rev_parse("HEAD").strip()
                return GitOperationResult(
                    success=True,
                    message=f"Successfully reverted to commit {target[:7]}",
                    output=output,
                    commit_hash=head,
                )

        return await self._mutate(path, "revert", run)

    async def push_tags(self, path: str | Path) -> GitOperationResult:
        def run() -> GitOperationResult:
            with open_repository(path) as repo, repo.git.custom_environment(**_NO_PROMPT):
                _, stdout, stderr = repo.git.push("--tags", with_extended_output=True)
                return GitOperationResult(
                    success=True, message="Pushed tags", output=(stdout or stderr or "").strip()
                )

        return await self._mutate(path, "push_tags", run, timeout=self.push_timeout_seconds)

    async def create_release_tag(
        self,
        path: str | Path,
        repository: str,
        allocator: VersionAllocator,
        message: str | None = None,
        now: datetime | None = None,
    ) -> ReleaseTag:
        """
        Allocate the next CalVer version and tag HEAD with it.

        Reading the tags, allocating and tagging form one unit under the
        exclusive lock, so two concurrent releases never get the same version.
        """

        def run() -> ReleaseTag:
            with open_repository(path) as repo:
                if not repo.head.is_valid():
                    raise RepositoryOperationError(
                        "Cannot tag a repository without commits",
                        step="tag",
                        context={"repository": repository, "path": str(path)},
                    )
                version = allocator.next_version(repository, read_tags(repo), now=now)
                repo.git.tag("-a", version, "-m", message or f"Release {version}")
                commit_hash = repo.git.rev_parse("HEAD").strip()
                logger.info(
                    "Release tag created",
                    extra={"repository": repository, "version": version, "commit_hash": commit_hash},
                )
                return ReleaseTag(
                    repository=repository,
                    version=version,
                    commit_hash=commit_hash,
                    timestamp=now or datetime.now(UTC),
                )

        return await self._mutate(path, "tag", run)

    async def _mutate(
        self,
        path: str | Path,
        step: str,
        func: Callable[[], T],
        timeout: float | None = None,
    ) -> T:
        timeout = timeout or self.timeout_seconds
        context = {"operation": step, "path": str(path)}

        def run() -> T:
            try:
                return func()
            except git.CommandError as e:
                diagnostic = git_diagnostic(e)
                logger.error(
                    f"Git {step} failed",
                    extra={**context, "diagnostic": diagnostic, "error_type": type(e).__name__},
                )
                raise RepositoryOperationError(
                    f"{step.capitalize()} failed: {diagnostic}",
                    step=step,
                    diagnostic=diagnostic,
                    context=context,
                ) from e

        try:
            return await run_serialized(
                self.locks.for_path(path),
                run,
                exclusive=True,
                timeout=timeout,
                operation=step,
                context=context,
            )
        except TimeoutError as e:
            msg = f"Git {step} timed out after {timeout}s"
            raise RepositoryOperationError(msg, step=step, diagnostic=msg, context=context) from e
