"""Release tag models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ReleaseTag(BaseModel):
    """A calendar-versioned release tag created on a repository."""

    repository: str
    version: str = Field(pattern=r"^\d{4}\.\d{2}\.\d{2}$")
    commit_hash: str
    timestamp: datetime


class VersionPreview(BaseModel):
    """Next version a release would receive, without creating it."""

    repository: str
    next_version: str
    existing_tags: int
