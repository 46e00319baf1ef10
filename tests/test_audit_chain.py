"""
Tests for the hash-chained audit log.

These tests verify that:
1. Appended entries link to their predecessor and verify
2. A modified or deleted entry is reported at the right position
3. Segments rotate by size and age
4. Retention prunes old segments and the remaining chain still verifies
5. Concurrent appends form a single chain
6. An interrupted append is dropped on restart
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from certchain.models.audit import (
    AuditAction,
    AuditActor,
    AuditCategory,
    AuditLogEntry,
    AuditLogQuery,
    AuditResult,
)
from certchain.services import audit_chain as audit_chain_module
from certchain.services.audit_chain import ANCHOR_FILE, AuditChain, compute_signature
from certchain.services.hashing import GENESIS_HASH

T0 = datetime(2025, 1, 1, 8, 0, tzinfo=UTC)


def make_entry(timestamp: datetime, details: str = "x", result: AuditResult = AuditResult.SUCCESS) -> AuditLogEntry:
    return AuditLogEntry(
        timestamp=timestamp,
        category=AuditCategory.GIT,
        action=AuditAction.GIT_PUSH,
        result=result,
        details=details,
    )


def segment_files(storage: Path) -> list[Path]:
    return sorted(storage.glob("audit_*.jsonl"))


def rewrite_lines(path: Path, transform) -> None:
    lines = path.read_text().splitlines()
    path.write_text("".join(line + "\n" for line in transform(lines)))


async def new_chain(storage: Path, **kwargs) -> AuditChain:
    chain = AuditChain(storage, **kwargs)
    await chain.initialize()
    return chain


class TestAppend:
    async def test_first_entry_links_to_genesis(self, audit_chain: AuditChain) -> None:
        stored = await audit_chain.record(AuditCategory.SYSTEM, AuditAction.SYSTEM_START, AuditResult.SUCCESS)

        assert stored.previous_hash == GENESIS_HASH
        assert len(stored.signature) == 64
        assert audit_chain.tip == stored.signature

    async def test_entries_link_in_order(self, audit_chain: AuditChain) -> None:
        first = await audit_chain.record(AuditCategory.GIT, AuditAction.GIT_COMMIT, AuditResult.SUCCESS)
        second = await audit_chain.record(AuditCategory.GIT, AuditAction.GIT_PUSH, AuditResult.FAILURE)

        assert second.previous_hash == first.signature

    async def test_signature_covers_stored_record(self, audit_chain: AuditChain) -> None:
        await audit_chain.record(
            AuditCategory.CERTIFICATE,
            AuditAction.CERTIFICATE_GENERATE,
            AuditResult.SUCCESS,
            details="Zertifikat für Müller",
            additional_data={"b": 1, "a": "ü"},
        )
        raw = json.loads(segment_files(audit_chain.storage_path)[0].read_text().splitlines()[0])

        assert raw["signature"] == compute_signature(raw)
        assert raw["additional_data"] == '{"a":"ü","b":1}'

    async def test_actor_fields_are_recorded(self, audit_chain: AuditChain) -> None:
        actor = AuditActor(user_id="api-client", user_name="Jane", ip_address="10.0.0.1")
        stored = await audit_chain.record(
            AuditCategory.GIT, AuditAction.GIT_COMMIT, AuditResult.SUCCESS, actor=actor, duration_ms=12.34567
        )

        assert stored.user_name == "Jane"
        assert stored.ip_address == "10.0.0.1"
        assert stored.duration_ms == 12.346

    async def test_append_before_initialize_raises(self, tmp_path: Path) -> None:
        chain = AuditChain(tmp_path / "audit")
        with pytest.raises(RuntimeError, match="not initialized"):
            await chain.append(make_entry(T0))

    async def test_tip_survives_restart(self, tmp_path: Path) -> None:
        chain = await new_chain(tmp_path / "audit")
        last = await chain.record(AuditCategory.SYSTEM, AuditAction.SYSTEM_START, AuditResult.SUCCESS)

        reopened = await new_chain(tmp_path / "audit")
        nxt = await reopened.record(AuditCategory.SYSTEM, AuditAction.SYSTEM_STOP, AuditResult.SUCCESS)

        assert nxt.previous_hash == last.signature
        assert (await reopened.verify_chain()).valid

    async def test_concurrent_appends_form_one_chain(self, audit_chain: AuditChain) -> None:
        await asyncio.gather(
            *(
                audit_chain.record(AuditCategory.GIT, AuditAction.GIT_PUSH, AuditResult.SUCCESS, details=str(n))
                for n in range(50)
            )
        )

        verification = await audit_chain.verify_chain()
        assert verification.valid
        assert verification.checked_entries == 50


class TestVerify:
    async def test_empty_chain_is_valid(self, audit_chain: AuditChain) -> None:
        verification = await audit_chain.verify_chain()
        assert verification.valid
        assert verification.checked_entries == 0

    async def test_modified_entry_is_reported(self, audit_chain: AuditChain) -> None:
        entries = [await audit_chain.append(make_entry(T0 + timedelta(seconds=n), str(n))) for n in range(5)]
        segment = segment_files(audit_chain.storage_path)[0]

        def tamper(lines: list[str]) -> list[str]:
            record = json.loads(lines[2])
            record["details"] = "rewritten"
            lines[2] = json.dumps(record)
            return lines

        rewrite_lines(segment, tamper)
        verification = await audit_chain.verify_chain()

        assert not verification.valid
        assert verification.broken_at == entries[2].id
        assert "Signature" in verification.reason

    async def test_deleted_entry_reports_successor(self, audit_chain: AuditChain) -> None:
        entries = [await audit_chain.append(make_entry(T0 + timedelta(seconds=n), str(n))) for n in range(5)]
        segment = segment_files(audit_chain.storage_path)[0]

        rewrite_lines(segment, lambda lines: lines[:2] + lines[3:])
        verification = await audit_chain.verify_chain()

        assert not verification.valid
        assert verification.broken_at == entries[3].id

    async def test_truncated_tail_is_detected(self, audit_chain: AuditChain) -> None:
        for n in range(3):
            await audit_chain.append(make_entry(T0 + timedelta(seconds=n)))
        segment = segment_files(audit_chain.storage_path)[0]

        rewrite_lines(segment, lambda lines: lines[:-1])
        verification = await audit_chain.verify_chain()

        assert not verification.valid
        assert "tip" in verification.reason

    async def test_range_verification(self, audit_chain: AuditChain) -> None:
        for n in range(6):
            await audit_chain.append(make_entry(T0 + timedelta(seconds=n)))

        verification = await audit_chain.verify_chain(start=2, end=4)
        assert verification.valid
        assert verification.checked_entries == 2

    async def test_garbage_line_is_reported(self, audit_chain: AuditChain) -> None:
        for n in range(3):
            await audit_chain.append(make_entry(T0 + timedelta(seconds=n)))
        segment = segment_files(audit_chain.storage_path)[0]

        rewrite_lines(segment, lambda lines: lines[:1] + ["not json"] + lines[1:])
        verification = await audit_chain.verify_chain()

        assert not verification.valid
        assert verification.broken_at == f"{segment.name}:2"


class TestSegments:
    async def test_rotates_by_entry_count(self, tmp_path: Path) -> None:
        chain = await new_chain(tmp_path / "audit", max_entries_per_segment=3)
        for n in range(7):
            await chain.append(make_entry(T0 + timedelta(seconds=n)))

        files = segment_files(chain.storage_path)
        assert [f.name for f in files] == [
            "audit_2025-01-01_000001.jsonl",
            "audit_2025-01-01_000002.jsonl",
            "audit_2025-01-01_000003.jsonl",
        ]
        assert [len(f.read_text().splitlines()) for f in files] == [3, 3, 1]
        assert (await chain.verify_chain()).valid

    async def test_rotates_by_age(self, tmp_path: Path) -> None:
        chain = await new_chain(tmp_path / "audit", max_segment_age_hours=24)
        await chain.append(make_entry(T0))
        await chain.append(make_entry(T0 + timedelta(hours=23)))
        await chain.append(make_entry(T0 + timedelta(hours=25)))

        files = segment_files(chain.storage_path)
        assert [f.name for f in files] == [
            "audit_2025-01-01_000001.jsonl",
            "audit_2025-01-02_000002.jsonl",
        ]
        assert (await chain.verify_chain()).valid

    async def test_interrupted_append_is_dropped(self, tmp_path: Path) -> None:
        storage = tmp_path / "audit"
        chain = await new_chain(storage)
        last = await chain.append(make_entry(T0))
        segment = segment_files(storage)[0]
        with segment.open("a") as f:
            f.write('{"id": "half-writ')

        # Readers ignore the fragment
        assert (await chain.verify_chain()).valid

        reopened = await new_chain(storage)
        assert segment.read_text().endswith("\n")
        nxt = await reopened.append(make_entry(T0 + timedelta(seconds=1)))
        assert nxt.previous_hash == last.signature
        assert (await reopened.verify_chain()).valid

    async def test_failed_write_leaves_no_fragment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        storage = tmp_path / "audit"
        chain = await new_chain(storage)
        first = await chain.append(make_entry(T0))

        def disk_full(f, data: bytes) -> None:
            f.write(data[:20])
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(audit_chain_module, "_write_all", disk_full)
        with pytest.raises(OSError):
            await chain.append(make_entry(T0 + timedelta(seconds=1)))
        monkeypatch.undo()

        nxt = await chain.append(make_entry(T0 + timedelta(seconds=2)))

        assert nxt.previous_hash == first.signature
        assert len(segment_files(storage)[0].read_text().splitlines()) == 2
        assert (await chain.verify_chain()).valid
        assert (await (await new_chain(storage)).verify_chain()).valid


class TestRetention:
    async def test_prunes_old_segments_and_keeps_chain_valid(self, tmp_path: Path) -> None:
        storage = tmp_path / "audit"
        now = T0 + timedelta(days=40)
        chain = await new_chain(storage, max_entries_per_segment=2, retention_days=30, clock=lambda: now)

        old = [await chain.append(make_entry(T0 + timedelta(minutes=n))) for n in range(4)]
        for n in range(3):
            await chain.append(make_entry(now - timedelta(minutes=10 - n)))

        pruned = await chain.apply_retention(now)

        assert pruned == 4
        anchor = json.loads((storage / ANCHOR_FILE).read_text())
        assert anchor["anchor_signature"] == old[-1].signature
        assert anchor["pruned_through_seq"] == 2
        assert anchor["pruned_entries_total"] == 4

        verification = await chain.verify_chain()
        assert verification.valid
        assert verification.anchor == old[-1].signature

        page = await chain.query(AuditLogQuery(action=AuditAction.AUDIT_RETENTION))
        assert page.total_count == 1
        assert page.entries[0].affected_item_count == 4

        reopened = await new_chain(storage, max_entries_per_segment=2, retention_days=30)
        assert (await reopened.verify_chain()).valid

    async def test_active_segment_is_never_pruned(self, tmp_path: Path) -> None:
        storage = tmp_path / "audit"
        chain = await new_chain(storage, retention_days=1)
        await chain.append(make_entry(T0))

        assert await chain.apply_retention(T0 + timedelta(days=10)) == 0
        assert len(segment_files(storage)) == 1

    async def test_nothing_to_prune_records_nothing(self, audit_chain: AuditChain) -> None:
        await audit_chain.append(make_entry(datetime.now(UTC)))
        assert await audit_chain.apply_retention() == 0
        assert (await audit_chain.query(AuditLogQuery())).total_count == 1


class TestQueries:
    async def test_query_filters_and_pages_newest_first(self, audit_chain: AuditChain) -> None:
        for n in range(5):
            await audit_chain.append(make_entry(T0 + timedelta(minutes=n), str(n)))
        await audit_chain.append(make_entry(T0 + timedelta(minutes=10), "failed", AuditResult.FAILURE))

        page = await audit_chain.query(AuditLogQuery(result=AuditResult.SUCCESS, skip=1, take=2))

        assert page.total_count == 5
        assert [e.details for e in page.entries] == ["3", "2"]
        assert page.page == 1
        assert page.has_more

    async def test_query_time_window_accepts_naive_bounds(self, audit_chain: AuditChain) -> None:
        for n in range(5):
            await audit_chain.append(make_entry(T0 + timedelta(hours=n), str(n)))

        query = AuditLogQuery(from_time=datetime(2025, 1, 1, 9, 0), to_time=datetime(2025, 1, 1, 11, 0))
        page = await audit_chain.query(query)

        assert sorted(e.details for e in page.entries) == ["1", "2", "3"]

    async def test_status_counts(self, audit_chain: AuditChain) -> None:
        await audit_chain.append(make_entry(T0))
        await audit_chain.append(make_entry(T0 + timedelta(seconds=1), result=AuditResult.ERROR))

        status = await audit_chain.status()

        assert status.total_entries == 2
        assert status.segment_count == 1
        assert status.entries_by_result == {"Success": 1, "Error": 1}
        assert status.last_signature == audit_chain.tip
        assert status.oldest_entry == T0

    async def test_summary_lists_recent_failures(self, tmp_path: Path) -> None:
        now = T0 + timedelta(days=1)
        chain = await new_chain(tmp_path / "audit", clock=lambda: now)
        await chain.append(make_entry(T0 - timedelta(days=30), "too old", AuditResult.ERROR))
        await chain.append(make_entry(T0, "ok"))
        await chain.append(make_entry(T0 + timedelta(hours=1), "broken", AuditResult.ERROR))

        summary = await chain.summary(days=7)

        assert summary.total_entries == 2
        assert summary.by_result == {"Success": 1, "Error": 1}
        assert [e.details for e in summary.recent_failures] == ["broken"]

    async def test_export_includes_verification(self, audit_chain: AuditChain) -> None:
        for n in range(3):
            await audit_chain.append(make_entry(T0 + timedelta(seconds=n)))

        export = await audit_chain.export(exported_by="Jane")

        assert export.total_entries == 3
        assert export.verification.valid
        assert export.exported_by == "Jane"
        assert all(compute_signature(raw) == raw["signature"] for raw in export.entries)
