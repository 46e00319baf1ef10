"""Path and identifier validation for repository operations and export names."""

from __future__ import annotations

import re
from pathlib import Path

_COMMIT_HASH_PATTERN = re.compile(r"^[0-9a-fA-F]{7,40}$")


class PathValidationError(ValueError):
    """Raised when path validation fails."""


def validate_repository_relative_path(path: str, repository_root: Path) -> str:
    """Validate a path given relative to a repository working tree.

    Args:
        path: Path relative to the repository root (e.g. "src/app.py")
        repository_root: Repository working tree

    Returns:
        The path normalized to forward slashes, still relative

    Raises:
        PathValidationError: If the path is absolute, contains traversal
            sequences, or resolves outside the working tree
    """
    if not path or not isinstance(path, str):
        msg = "Path must be a non-empty string"
        raise PathValidationError(msg)

    if "\x00" in path:
        msg = "Path contains null bytes"
        raise PathValidationError(msg)

    normalized = path.replace("\\", "/")
    if normalized.startswith("/") or re.match(r"^[A-Za-z]:", normalized):
        msg = "Path must be relative to the repository root"
        raise PathValidationError(msg)

    if ".." in normalized.split("/"):
        msg = "Path contains '..' which is not allowed"
        raise PathValidationError(msg)

    root_resolved = repository_root.resolve()
    try:
        resolved = (root_resolved / normalized).resolve()
    except (OSError, RuntimeError) as e:
        msg = f"Cannot resolve path: {e}"
        raise PathValidationError(msg) from e

    try:
        resolved.relative_to(root_resolved)
    except ValueError:
        msg = f"Path {path} resolves outside repository root"
        raise PathValidationError(msg) from None

    return normalized


def validate_commit_hash(commit_hash: str) -> str:
    """Validate an abbreviated or full hexadecimal commit hash."""
    if not commit_hash or not _COMMIT_HASH_PATTERN.match(commit_hash):
        msg = "Commit hash must be 7 to 40 hexadecimal characters"
        raise PathValidationError(msg)
    return commit_hash.lower()


def sanitize_filename(filename: str, max_length: int = 64) -> str:
    """Sanitize a value that becomes part of a download file name.

    Removes path separators, parent references, control characters and
    anything outside [A-Za-z0-9._-].

    Raises:
        PathValidationError: If filename is empty after sanitization
    """
    if not filename or not isinstance(filename, str):
        msg = "Filename must be a non-empty string"
        raise PathValidationError(msg)

    sanitized = "".join(c for c in filename if ord(c) >= 32)
    sanitized = sanitized.replace("/", "_").replace("\\", "_").replace("..", "__")
    sanitized = re.sub(r"[^A-Za-z0-9._-]", "_", sanitized)
    sanitized = sanitized.strip(". ")[:max_length]

    if not sanitized:
        msg = "Filename is empty after sanitization"
        raise PathValidationError(msg)

    return sanitized
