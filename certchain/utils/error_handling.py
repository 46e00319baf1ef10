"""
Error handling utilities for certchain.

Provides helpers for consistent error reporting and translation of
domain errors into structured HTTP responses.
"""

from __future__ import annotations

from fastapi import HTTPException, status

from certchain.exceptions import (
    CertChainError,
    CertificateNotFoundError,
    ChainIntegrityError,
    PartialWorkflowFailure,
    RepositoryNotFoundError,
    RepositoryOperationError,
    RepositoryQueryError,
    ValidationError,
    VersionExhaustedError,
)

# Ordered most-specific first; PartialWorkflowFailure must not fall through
# to the generic 500.
_STATUS_BY_ERROR: list[tuple[type[CertChainError], int]] = [
    (RepositoryNotFoundError, status.HTTP_404_NOT_FOUND),
    (CertificateNotFoundError, status.HTTP_404_NOT_FOUND),
    (RepositoryQueryError, status.HTTP_502_BAD_GATEWAY),
    (RepositoryOperationError, status.HTTP_409_CONFLICT),
    (PartialWorkflowFailure, status.HTTP_409_CONFLICT),
    (VersionExhaustedError, status.HTTP_409_CONFLICT),
    (ChainIntegrityError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
]


def format_exception_for_response(e: Exception) -> dict[str, object]:
    """
    Format exception for API error response.

    Extracts error message and context from certchain exceptions or
    formats generic exceptions for HTTP responses.
    """
    error_dict: dict[str, object] = {
        "error": type(e).__name__,
        "message": str(e),
    }

    if isinstance(e, CertChainError) and e.context:
        error_dict["context"] = e.context

    return error_dict


def http_exception_for(e: CertChainError) -> HTTPException:
    """
    Map a domain error to an HTTPException with a structured detail body.

    Every failure names the step that failed so callers of the composite
    workflows can react to each failure point differently.
    """
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(e, error_type):
            status_code = code
            break
    return HTTPException(status_code=status_code, detail=format_exception_for_response(e))
