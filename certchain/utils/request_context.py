"""
Request context management using ContextVars.

Carries the request ID and the caller's address across async boundaries so
log records and audit entries can be attributed without threading the values
through every call.
"""

from __future__ import annotations

import contextvars
import uuid

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id",
    default=None,
)
client_ip_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "client_ip",
    default=None,
)


def get_request_id() -> str | None:
    """Get current request ID from context."""
    return request_id_var.get()


def get_client_ip() -> str | None:
    """Get the address of the client that issued the current request."""
    return client_ip_var.get()


def set_request_context(request_id: str, client_ip: str | None = None) -> None:
    """Bind request ID and client address to the current context."""
    request_id_var.set(request_id)
    client_ip_var.set(client_ip)


def generate_request_id() -> str:
    """Generate a new unique request ID."""
    return str(uuid.uuid4())


def clear_request_context() -> None:
    """Clear request ID and client address from context."""
    request_id_var.set(None)
    client_ip_var.set(None)
