"""
Middleware to bind a request ID and client address to every request.

The request ID is echoed back in the X-Request-ID header; the client
address feeds the ip_address field of audit entries.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware

from certchain.utils.request_context import (
    clear_request_context,
    generate_request_id,
    set_request_context,
)

if TYPE_CHECKING:
    from fastapi import Request

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware to track request IDs across async contexts."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        """Process request and set request context."""
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        client_ip = request.client.host if request.client else None
        set_request_context(request_id, client_ip)

        should_log = not request.url.path.startswith("/health")
        if should_log:
            logger.info(
                "Request started",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "client_ip": client_ip,
                },
            )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            if should_log:
                logger.info(
                    "Request completed",
                    extra={
                        "request_id": request_id,
                        "status_code": response.status_code,
                    },
                )

            return response
        finally:
            clear_request_context()
