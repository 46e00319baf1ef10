"""
Custom exception classes with context for certchain.

All exceptions inherit from CertChainError and carry a context dictionary
that is attached to log records and to structured API error responses.
"""

from __future__ import annotations


class CertChainError(Exception):
    """
    Base exception for certchain.

    Attributes:
        message: Human-readable error message
        context: Optional dictionary with additional context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, object] | None = None):
        """
        Initialize exception with message and optional context.

        Args:
            message: Human-readable error message
            context: Optional dictionary with contextual information
                    (operation name, repository, paths, raw diagnostics, etc.)
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}


class RepositoryNotFoundError(CertChainError):
    """
    Repository path does not exist or is not a repository root.

    Fatal to the single request; never retried.

    Example:
        raise RepositoryNotFoundError(
            "Not a git repository",
            context={"repository": "backend", "path": "/srv/backend"}
        )
    """


class RepositoryQueryError(CertChainError):
    """
    The version-control process failed while answering a read query.

    Carries the raw diagnostic text from git. Retryable by the caller.
    """

    def __init__(
        self,
        message: str,
        diagnostic: str = "",
        context: dict[str, object] | None = None,
    ):
        super().__init__(message, context)
        self.diagnostic = diagnostic
        self.context.setdefault("diagnostic", diagnostic)


class RepositoryOperationError(CertChainError):
    """
    A mutating git operation (commit, push, discard, revert, tag) failed.

    Example:
        raise RepositoryOperationError(
            "Push failed: remote rejected",
            step="push",
            diagnostic="! [rejected] main -> main (fetch first)",
        )
    """

    def __init__(
        self,
        message: str,
        step: str,
        diagnostic: str = "",
        context: dict[str, object] | None = None,
    ):
        super().__init__(message, context)
        self.step = step
        self.diagnostic = diagnostic
        self.context.setdefault("step", step)
        self.context.setdefault("diagnostic", diagnostic)


class VersionExhaustedError(CertChainError):
    """
    The two-digit release counter for the current month is used up.

    Requires operator intervention; never retried automatically.
    """


class ChainIntegrityError(CertChainError):
    """
    Audit chain verification found a broken link.

    Always surfaced to the caller and recorded as its own audit entry.
    """

    def __init__(
        self,
        message: str,
        broken_at: str | None,
        context: dict[str, object] | None = None,
    ):
        super().__init__(message, context)
        self.broken_at = broken_at
        self.context.setdefault("broken_at", broken_at)


class PartialWorkflowFailure(CertChainError):
    """
    A multi-step workflow stopped after some steps had already taken effect.

    The completed steps are not undone. `resume_step` names the step the
    caller should retry on its own (e.g. "push" after a successful commit).

    Example:
        raise PartialWorkflowFailure(
            "Commit succeeded but push failed: connection reset",
            completed_steps=["commit"],
            failed_step="push",
            resume_step="push",
            context={"repository": "frontend", "commit_hash": "3f2a9c1"}
        )
    """

    def __init__(
        self,
        message: str,
        completed_steps: list[str],
        failed_step: str,
        resume_step: str,
        context: dict[str, object] | None = None,
    ):
        super().__init__(message, context)
        self.completed_steps = completed_steps
        self.failed_step = failed_step
        self.resume_step = resume_step
        self.context.setdefault("completed_steps", completed_steps)
        self.context.setdefault("failed_step", failed_step)
        self.context.setdefault("resume_step", resume_step)


class CertificateError(CertChainError):
    """Certificate construction or persistence failed."""


class CertificateNotFoundError(CertificateError):
    """No stored certificate has the requested id."""


class ConfigurationError(CertChainError):
    """
    Configuration error.

    Raised when configuration loading, validation, or parsing fails.
    """


class ValidationError(CertChainError):
    """
    Input validation failed.

    Example:
        raise ValidationError(
            "Invalid commit hash",
            context={"field": "commit_hash", "value": "not-a-hash"}
        )
    """
