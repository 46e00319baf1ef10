"""Tests for the periodic integrity verification and audit retention loops."""

from __future__ import annotations

import asyncio

from certchain.main import periodic_audit_retention, periodic_integrity_verification
from certchain.models.audit import AuditAction, AuditLogQuery, AuditResult


async def _run_briefly(coro, seconds: float = 0.3) -> None:
    task = asyncio.create_task(coro)
    await asyncio.sleep(seconds)
    task.cancel()
    await task
    assert task.done()


async def test_verification_records_auto_verify(facade) -> None:
    await _run_briefly(periodic_integrity_verification(facade, interval_seconds=0))

    page = await facade.audit_query(AuditLogQuery(action=AuditAction.INTEGRITY_AUTO_VERIFY))
    assert page.total_count >= 1
    assert page.entries[0].result == AuditResult.SUCCESS
    assert "backend: CLEAN" in page.entries[0].details


async def test_verification_survives_errors(facade, monkeypatch) -> None:
    calls = 0

    async def failing() -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("git unavailable")

    monkeypatch.setattr(facade, "run_scheduled_verification", failing)

    await _run_briefly(periodic_integrity_verification(facade, interval_seconds=0), seconds=0.1)

    assert calls > 1


async def test_retention_loop_stops_on_cancel(audit_chain) -> None:
    task = asyncio.create_task(periodic_audit_retention(audit_chain, interval_seconds=3600))
    await asyncio.sleep(0)
    task.cancel()
    await task

    assert task.done()
    assert not task.cancelled()
