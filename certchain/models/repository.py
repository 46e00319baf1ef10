"""Repository state models produced by the repository inspector."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, computed_field


class ChangeKind(str, Enum):
    """Working-tree change kinds reported by `git status --porcelain`."""

    MODIFIED = "Modified"
    ADDED = "Added"
    DELETED = "Deleted"
    RENAMED = "Renamed"
    COPIED = "Copied"
    UNMERGED = "Unmerged"
    UNTRACKED = "Untracked"
    IGNORED = "Ignored"
    TYPE_CHANGED = "TypeChanged"
    UNKNOWN = "Unknown"


class CommitInfo(BaseModel):
    """Summary of a single commit."""

    hash: str
    short_hash: str
    author: str
    email: str = ""
    message: str
    timestamp: datetime


class ModifiedFile(BaseModel):
    """A single working-tree change."""

    path: str
    change_kind: ChangeKind
    status_code: str = Field(description="Raw two-letter porcelain status")


class RepositoryState(BaseModel):
    """Point-in-time view of a repository. Recomputed on every query."""

    name: str
    path: str
    remote_url: str | None = None
    current_branch: str = ""
    last_commit: CommitInfo | None = None
    modified_files: list[ModifiedFile] = Field(default_factory=list)
    commits_ahead: int = Field(default=0, ge=0)
    commits_behind: int = Field(default=0, ge=0)
    has_upstream: bool = False
    is_valid: bool = True
    error: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_changes(self) -> bool:
        return bool(self.modified_files)

    @property
    def synced_with_remote(self) -> bool:
        return self.commits_ahead == 0


class RepositoryOverview(BaseModel):
    """Status of every configured repository."""

    timestamp: datetime
    repositories: dict[str, RepositoryState]


class GitOperationResult(BaseModel):
    """Outcome of a mutating git operation."""

    success: bool
    message: str
    output: str | None = None
    commit_hash: str | None = None
    committed: bool = Field(
        default=True,
        description="False when a commit found nothing to commit",
    )
