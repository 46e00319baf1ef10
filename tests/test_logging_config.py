"""Tests for logging configuration, filters and request tracing."""

from __future__ import annotations

import json
import logging
from io import StringIO

import pytest
from pythonjsonlogger.json import JsonFormatter

from certchain.logging_config import HealthCheckFilter, RequestIDFilter, configure_json_logging
from certchain.utils.request_context import (
    clear_request_context,
    get_client_ip,
    get_request_id,
    set_request_context,
)


def _record(message: str) -> logging.LogRecord:
    return logging.LogRecord("uvicorn.access", logging.INFO, __file__, 1, message, None, None)


class TestHealthCheckFilter:
    @pytest.mark.parametrize(
        "message",
        [
            '127.0.0.1:56789 - "GET /health HTTP/1.1" 200 OK',
            '127.0.0.1:56789 - "GET /health/ready HTTP/1.1" 200 OK',
        ],
    )
    def test_successful_health_checks_suppressed(self, message: str) -> None:
        assert HealthCheckFilter().filter(_record(message)) is False

    @pytest.mark.parametrize(
        "message",
        [
            '127.0.0.1:56789 - "GET /health/ready HTTP/1.1" 503 Service Unavailable',
            '127.0.0.1:56789 - "GET /health/detailed HTTP/1.1" 200 OK',
            '127.0.0.1:56789 - "GET /api/v1/git/status HTTP/1.1" 200 OK',
        ],
    )
    def test_other_requests_kept(self, message: str) -> None:
        assert HealthCheckFilter().filter(_record(message)) is True


class TestRequestIDFilter:
    def test_outside_request(self) -> None:
        record = _record("hello")
        RequestIDFilter().filter(record)
        assert record.request_id == "no-request-id"

    def test_inside_request(self) -> None:
        set_request_context("req-1", "10.0.0.5")
        try:
            record = _record("hello")
            RequestIDFilter().filter(record)
            assert record.request_id == "req-1"
            assert get_client_ip() == "10.0.0.5"
        finally:
            clear_request_context()
        assert get_request_id() is None


def test_json_output_carries_extra_fields() -> None:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(RequestIDFilter())
    handler.setFormatter(JsonFormatter(fmt="%(levelname)s %(name)s %(message)s %(request_id)s"))
    logger = logging.getLogger("certchain.test_json")
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    try:
        logger.info("Commit completed", extra={"repository": "backend", "commit_hash": "abc1234"})
    finally:
        logger.removeHandler(handler)

    payload = json.loads(stream.getvalue())
    assert payload["message"] == "Commit completed"
    assert payload["repository"] == "backend"
    assert payload["commit_hash"] == "abc1234"
    assert payload["request_id"] == "no-request-id"


def test_configure_replaces_root_handlers() -> None:
    root = logging.getLogger()
    saved_handlers = root.handlers[:]
    saved_level = root.level
    try:
        configure_json_logging(log_level="WARNING", use_json=True)

        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert logging.getLogger("git").level == logging.WARNING
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
