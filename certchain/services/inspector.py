"""Read-only repository queries: status, history, working-tree changes, tags.

Everything goes through the git executable via GitPython; callers only ever
see models. Blocking work runs in a worker thread under the repository's
shared lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TypeVar

import git

from certchain.exceptions import RepositoryNotFoundError, RepositoryQueryError
from certchain.models.repository import ChangeKind, CommitInfo, ModifiedFile, RepositoryState
from certchain.services.lock import RepositoryLockRegistry, run_serialized

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Unit separator between fields of a formatted log line
_FIELD_SEP = "\x1f"
_LOG_FORMAT = "%H%x1f%an%x1f%ae%x1f%s%x1f%aI"

_CHANGE_KINDS = {
    "M": ChangeKind.MODIFIED,
    "A": ChangeKind.ADDED,
    "D": ChangeKind.DELETED,
    "R": ChangeKind.RENAMED,
    "C": ChangeKind.COPIED,
    "T": ChangeKind.TYPE_CHANGED,
}
_UNMERGED_CODES = {"DD", "AU", "UD", "UA", "DU", "AA", "UU"}


def git_diagnostic(error: git.CommandError) -> str:
    """Raw stderr of a failed git command without GitPython's decoration."""
    text = (error.stderr or "").strip()
    if text.startswith("stderr:"):
        text = text[len("stderr:"):].strip()
    if len(text) >= 2 and text[0] == "'" and text[-1] == "'":
        text = text[1:-1]
    return text.strip() or str(error)


def open_repository(path: str | Path) -> git.Repo:
    """
    Open the repository whose working tree root is exactly path.

    Parent directories are not searched.

    Raises:
        RepositoryNotFoundError: If path does not exist or is not a repository root
    """
    repo_path = Path(path)
    context = {"path": str(repo_path)}
    if not repo_path.is_dir():
        raise RepositoryNotFoundError(f"Repository path does not exist: {repo_path}", context=context)

    try:
        repo = git.Repo(repo_path)
    except (git.InvalidGitRepositoryError, git.NoSuchPathError) as e:
        raise RepositoryNotFoundError(f"Not a git repository: {repo_path}", context=context) from e

    working_tree = repo.working_tree_dir
    if working_tree is None or Path(working_tree).resolve() != repo_path.resolve():
        repo.close()
        raise RepositoryNotFoundError(f"Not a repository root: {repo_path}", context=context)
    return repo


def classify_change(code: str) -> ChangeKind:
    """Map a two-letter porcelain status code to a ChangeKind."""
    if code == "??":
        return ChangeKind.UNTRACKED
    if code == "!!":
        return ChangeKind.IGNORED
    if code in _UNMERGED_CODES:
        return ChangeKind.UNMERGED
    for letter in code:
        if letter != " ":
            return _CHANGE_KINDS.get(letter, ChangeKind.UNKNOWN)
    return ChangeKind.UNKNOWN


def parse_porcelain(output: str) -> list[ModifiedFile]:
    """Parse `git status --porcelain -z` output, preserving order.

    Renames and copies are reported as "old -> new".
    """
    files: list[ModifiedFile] = []
    records = output.split("\0")
    i = 0
    while i < len(records):
        record = records[i]
        i += 1
        if len(record) < 4:
            continue
        code, path = record[:2], record[3:]
        if code[0] in "RC" and i < len(records):
            path = f"{records[i]} -> {path}"
            i += 1
        files.append(ModifiedFile(path=path, change_kind=classify_change(code), status_code=code))
    return files


def parse_log_line(line: str) -> CommitInfo:
    head, authored = line.rsplit(_FIELD_SEP, 1)
    commit_hash, author, email, subject = head.split(_FIELD_SEP, 3)
    return CommitInfo(
        hash=commit_hash,
        short_hash=commit_hash[:7],
        author=author,
        email=email,
        message=subject,
        timestamp=datetime.fromisoformat(authored),
    )


def read_history(repo: git.Repo, count: int, timeout: float | None = None) -> list[CommitInfo]:
    if not repo.head.is_valid():
        return []
    # NUL-terminated records; subjects may hold any other control character
    output = repo.git.log(f"-{count}", "-z", f"--format={_LOG_FORMAT}", kill_after_timeout=timeout)
    return [parse_log_line(record) for record in output.split("\0") if record.strip()]


def read_branch(repo: git.Repo, timeout: float | None = None) -> str:
    if repo.head.is_valid():
        return repo.git.rev_parse("--abbrev-ref", "HEAD", kill_after_timeout=timeout).strip()
    # Unborn branch: HEAD points at a ref that has no commit yet
    return repo.git.symbolic_ref("--short", "HEAD", kill_after_timeout=timeout).strip()


def read_remote_url(repo: git.Repo, timeout: float | None = None) -> str | None:
    try:
        url = repo.git.remote("get-url", "origin", kill_after_timeout=timeout).strip()
    except git.GitCommandError:
        return None
    return url or None


def read_ahead_behind(repo: git.Repo, timeout: float | None = None) -> tuple[bool, int, int]:
    """Return (has_upstream, ahead, behind) relative to the tracking branch."""
    if not repo.head.is_valid():
        return False, 0, 0
    try:
        repo.git.rev_parse(
            "--abbrev-ref", "--symbolic-full-name", "@{upstream}", kill_after_timeout=timeout
        )
    except git.GitCommandError:
        return False, 0, 0
    output = repo.git.rev_list(
        "--left-right", "--count", "HEAD...@{upstream}", kill_after_timeout=timeout
    )
    ahead, behind = output.split()
    return True, int(ahead), int(behind)


def read_modified_files(repo: git.Repo, timeout: float | None = None) -> list[ModifiedFile]:
    output = repo.git.status("--porcelain", "-z", "--untracked-files=all", kill_after_timeout=timeout)
    return parse_porcelain(output)


def read_tags(repo: git.Repo, timeout: float | None = None) -> list[str]:
    output = repo.git.tag("-l", kill_after_timeout=timeout)
    return [line.strip() for line in output.splitlines() if line.strip()]


def read_state(repo: git.Repo, name: str, timeout: float | None = None) -> RepositoryState:
    history = read_history(repo, 1, timeout)
    has_upstream, ahead, behind = read_ahead_behind(repo, timeout)
    return RepositoryState(
        name=name,
        path=str(repo.working_tree_dir),
        remote_url=read_remote_url(repo, timeout),
        current_branch=read_branch(repo, timeout),
        last_commit=history[0] if history else None,
        modified_files=read_modified_files(repo, timeout),
        commits_ahead=ahead,
        commits_behind=behind,
        has_upstream=has_upstream,
    )


class RepositoryInspector:
    """Answers read queries about repositories.

    No retries. Every query holds the repository's shared lock and is bounded
    by timeout_seconds.
    """

    def __init__(self, locks: RepositoryLockRegistry, timeout_seconds: float = 30):
        self.locks = locks
        self.timeout_seconds = timeout_seconds

    async def status(self, path: str | Path, name: str | None = None) -> RepositoryState:
        """Current branch, last commit, working-tree changes and upstream drift."""
        display_name = name or Path(path).name
        return await self._query(
            path,
            "status",
            lambda repo: read_state(repo, display_name, self.timeout_seconds),
        )

    async def history(self, path: str | Path, count: int = 20) -> list[CommitInfo]:
        """Up to count commits, newest first."""
        return await self._query(
            path, "history", lambda repo: read_history(repo, count, self.timeout_seconds)
        )

    async def modified_files(self, path: str | Path) -> list[ModifiedFile]:
        return await self._query(
            path, "modified_files", lambda repo: read_modified_files(repo, self.timeout_seconds)
        )

    async def tags(self, path: str | Path) -> list[str]:
        return await self._query(path, "tags", lambda repo: read_tags(repo, self.timeout_seconds))

    async def status_under_lock(self, path: str | Path, name: str | None = None) -> RepositoryState:
        """status() for a caller that already holds the repository's shared lock."""
        display_name = name or Path(path).name
        run = self._runner(
            path, "status", lambda repo: read_state(repo, display_name, self.timeout_seconds)
        )
        return await asyncio.to_thread(run)

    def _runner(self, path: str | Path, operation: str, reader: Callable[[git.Repo], T]) -> Callable[[], T]:
        context = {"operation": operation, "path": str(path)}

        def run() -> T:
            with open_repository(path) as repo:
                try:
                    return reader(repo)
                except git.CommandError as e:
                    diagnostic = git_diagnostic(e)
                    logger.warning(
                        "Git query failed",
                        extra={**context, "diagnostic": diagnostic, "error_type": type(e).__name__},
                    )
                    raise RepositoryQueryError(
                        f"git {operation} failed: {diagnostic}", diagnostic=diagnostic, context=context
                    ) from e
                except ValueError as e:
                    logger.warning("Unparsable git output", extra={**context, "error": str(e)})
                    raise RepositoryQueryError(
                        f"git {operation} returned unparsable output: {e}",
                        diagnostic=str(e),
                        context=context,
                    ) from e

        return run

    async def _query(self, path: str | Path, operation: str, reader: Callable[[git.Repo], T]) -> T:
        context = {"operation": operation, "path": str(path)}
        try:
            return await run_serialized(
                self.locks.for_path(path),
                self._runner(path, operation, reader),
                exclusive=False,
                timeout=self.timeout_seconds,
                operation=operation,
                context=context,
            )
        except TimeoutError as e:
            msg = f"git {operation} timed out after {self.timeout_seconds}s"
            raise RepositoryQueryError(msg, diagnostic=msg, context=context) from e
