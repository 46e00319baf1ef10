"""
Tamper-evident, hash-chained audit log.

Entries are stored one JSON object per line in segment files named
`audit_{YYYY-MM-DD}_{seq:06d}.jsonl`. Each entry carries the signature of
its predecessor in `previous_hash` and its own signature:

    signature = sha256(canonical(record without "signature") + previous_hash)

The signature covers the record exactly as stored, so fields written by a
newer version are still covered when an older version verifies the chain.

A trailing fragment without a newline (an append interrupted mid-write) is
never part of the chain; readers ignore it. Retention prunes whole segments
from the old end of the chain and records the signature the remaining chain
starts from in `chain_anchor.json`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, BinaryIO

from pydantic import ValidationError as PydanticValidationError

from certchain.models.audit import (
    AuditAction,
    AuditActor,
    AuditCategory,
    AuditExport,
    AuditLogEntry,
    AuditLogPage,
    AuditLogQuery,
    AuditLogStatus,
    AuditResult,
    AuditSummary,
    ChainVerification,
)
from certchain.services.hashing import GENESIS_HASH, canonical_json, digest
from certchain.utils.request_context import get_client_ip

logger = logging.getLogger(__name__)

ANCHOR_FILE = "chain_anchor.json"
_SEGMENT_PATTERN = re.compile(r"^audit_(\d{4}-\d{2}-\d{2})_(\d{6})\.jsonl$")


def compute_signature(record: dict[str, Any]) -> str:
    """Signature of a stored record (the "signature" key itself is excluded)."""
    body = {k: v for k, v in record.items() if k != "signature"}
    return digest(canonical_json(body) + str(record.get("previous_hash", "")))


def _write_all(f: BinaryIO, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = f.write(view)
        view = view[written:]


@dataclass
class _Segment:
    seq: int
    path: Path


@dataclass
class _StoredRecord:
    segment: _Segment
    line_no: int
    raw: dict[str, Any] | None
    text: str = ""

    @property
    def ref(self) -> str:
        if self.raw is not None and self.raw.get("id"):
            return str(self.raw["id"])
        return f"{self.segment.path.name}:{self.line_no}"


@dataclass
class _ActiveSegment:
    segment: _Segment
    count: int = 0
    started: datetime | None = None


@dataclass
class _Anchor:
    signature: str = GENESIS_HASH
    pruned_through_seq: int = 0
    pruned_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class AuditChain:
    """
    Append-only audit chain shared by every category.

    All appends go through one asyncio.Lock owned by the chain: read the
    cached tip, compute the signature, write + flush + fsync the line, move
    the tip. Call initialize() once inside the running event loop before
    the first append.
    """

    def __init__(
        self,
        storage_path: Path,
        max_entries_per_segment: int = 10000,
        max_segment_age_hours: float = 24,
        retention_days: int = 30,
        clock: Callable[[], datetime] | None = None,
    ):
        self.storage_path = Path(storage_path)
        self.max_entries_per_segment = max_entries_per_segment
        self.max_segment_age = timedelta(hours=max_segment_age_hours)
        self.retention_days = retention_days
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = asyncio.Lock()
        self._tip = GENESIS_HASH
        self._anchor = _Anchor()
        self._active: _ActiveSegment | None = None
        self._initialized = False

    @property
    def tip(self) -> str:
        """Signature the next appended entry will chain to."""
        return self._tip

    async def initialize(self) -> None:
        """Load the anchor and the chain tip from storage."""
        async with self._lock:
            await asyncio.to_thread(self._load_state)
            self._initialized = True
        logger.info(
            "Audit chain initialized",
            extra={
                "storage_path": str(self.storage_path),
                "segments": len(self._segments()),
                "tip": self._tip[:12],
            },
        )

    def _load_state(self) -> None:
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._anchor = self._read_anchor()
        self._tip = self._anchor.signature
        self._active = None

        segments = self._segments()
        for segment in reversed(segments):
            self._truncate_fragment(segment.path)
            records = [r for r in self._read_segment(segment) if r.raw is not None]
            if not records:
                continue
            self._tip = str(records[-1].raw.get("signature", ""))
            if segment is segments[-1]:
                self._active = _ActiveSegment(
                    segment=segment,
                    count=len(records),
                    started=_parse_timestamp(records[0].raw.get("timestamp")),
                )
            break

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        """
        Chain entry to the current tip and persist it.

        Returns:
            The stored entry with previous_hash and signature populated
        """
        if not self._initialized:
            raise RuntimeError("Audit chain not initialized. Call initialize() first.")

        async with self._lock:
            record = entry.model_dump(mode="json", exclude={"signature"})
            record["previous_hash"] = self._tip
            record["signature"] = compute_signature(record)

            active = self._segment_for(entry.timestamp)
            line = json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n"
            await asyncio.to_thread(self._write_line, active.segment.path, line)

            if active.count == 0:
                active.started = entry.timestamp
            active.count += 1
            self._tip = record["signature"]

        stored = AuditLogEntry.model_validate(record)
        self._echo(stored)
        return stored

    async def record(
        self,
        category: AuditCategory,
        action: AuditAction,
        result: AuditResult,
        details: str | None = None,
        actor: AuditActor | None = None,
        additional_data: dict[str, Any] | str | None = None,
        affected_item_count: int | None = None,
        duration_ms: float | None = None,
    ) -> AuditLogEntry:
        """Build an entry from its parts and append it."""
        if isinstance(additional_data, dict):
            additional_data = canonical_json(additional_data)
        actor = actor or AuditActor()
        entry = AuditLogEntry(
            category=category,
            action=action,
            result=result,
            details=details,
            user_id=actor.user_id,
            user_name=actor.user_name,
            ip_address=actor.ip_address or get_client_ip(),
            additional_data=additional_data,
            affected_item_count=affected_item_count,
            duration_ms=round(duration_ms, 3) if duration_ms is not None else None,
        )
        return await self.append(entry)

    def _segment_for(self, timestamp: datetime) -> _ActiveSegment:
        active = self._active
        if active is not None and active.count > 0:
            too_full = active.count >= self.max_entries_per_segment
            too_old = active.started is not None and timestamp - active.started >= self.max_segment_age
            if too_full or too_old:
                logger.info(
                    "Rotating audit segment",
                    extra={
                        "segment": active.segment.path.name,
                        "entries": active.count,
                        "reason": "size" if too_full else "age",
                    },
                )
                active = None

        if active is None:
            last_seq = max(
                [s.seq for s in self._segments()] + [self._anchor.pruned_through_seq]
            )
            seq = last_seq + 1
            name = f"audit_{timestamp.astimezone(UTC):%Y-%m-%d}_{seq:06d}.jsonl"
            active = _ActiveSegment(segment=_Segment(seq=seq, path=self.storage_path / name))
            self._active = active
        return active

    @staticmethod
    def _write_line(path: Path, line: str) -> None:
        """Append one line; a failed write leaves the segment as it was."""
        is_new = not path.exists()
        with path.open("ab", buffering=0) as f:
            size = os.fstat(f.fileno()).st_size
            try:
                _write_all(f, line.encode("utf-8"))
                os.fsync(f.fileno())
            except BaseException:
                os.ftruncate(f.fileno(), size)
                os.fsync(f.fileno())
                raise
        if is_new:
            path.chmod(0o600)

    def _echo(self, entry: AuditLogEntry) -> None:
        level = logging.INFO
        if entry.result in (AuditResult.FAILURE, AuditResult.ERROR):
            level = logging.WARNING
        logger.log(
            level,
            f"Audit {entry.category.value}/{entry.action.value}: {entry.result.value}",
            extra={
                "audit_id": entry.id,
                "audit_category": entry.category.value,
                "audit_action": entry.action.value,
                "audit_result": entry.result.value,
                "audit_user": entry.user_name,
                "audit_details": entry.details,
            },
        )

    # Storage reads

    def _segments(self) -> list[_Segment]:
        if not self.storage_path.is_dir():
            return []
        segments = []
        for path in self.storage_path.iterdir():
            match = _SEGMENT_PATTERN.match(path.name)
            if match is None:
                continue
            seq = int(match.group(2))
            # Leftovers of an interrupted retention pass are not part of the chain
            if seq <= self._anchor.pruned_through_seq:
                continue
            segments.append(_Segment(seq=seq, path=path))
        return sorted(segments, key=lambda s: s.seq)

    @staticmethod
    def _read_segment(segment: _Segment) -> list[_StoredRecord]:
        try:
            text = segment.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []

        lines = text.split("\n")
        # Last element is "" for a complete file, or an unterminated fragment
        lines = lines[:-1]

        records = []
        for line_no, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                raw = None
            if raw is not None and not isinstance(raw, dict):
                raw = None
            records.append(_StoredRecord(segment=segment, line_no=line_no, raw=raw, text=line))
        return records

    def _read_all(self) -> list[_StoredRecord]:
        records: list[_StoredRecord] = []
        for segment in self._segments():
            records.extend(self._read_segment(segment))
        return records

    def _truncate_fragment(self, path: Path) -> None:
        data = path.read_bytes()
        if not data or data.endswith(b"\n"):
            return
        keep = data.rfind(b"\n") + 1
        logger.warning(
            "Dropping unterminated audit fragment",
            extra={"segment": path.name, "fragment_bytes": len(data) - keep},
        )
        with path.open("r+b") as f:
            f.truncate(keep)
            f.flush()
            os.fsync(f.fileno())

    def _read_anchor(self) -> _Anchor:
        anchor_path = self.storage_path / ANCHOR_FILE
        if not anchor_path.exists():
            return _Anchor()
        with anchor_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return _Anchor(
            signature=data["anchor_signature"],
            pruned_through_seq=int(data["pruned_through_seq"]),
            pruned_at=data.get("pruned_at"),
            extra={k: v for k, v in data.items() if k not in {"anchor_signature", "pruned_through_seq", "pruned_at"}},
        )

    def _write_anchor(self, anchor: _Anchor) -> None:
        anchor_path = self.storage_path / ANCHOR_FILE
        temp_file = anchor_path.with_suffix(".json.tmp")
        document = {
            **anchor.extra,
            "anchor_signature": anchor.signature,
            "pruned_through_seq": anchor.pruned_through_seq,
            "pruned_at": anchor.pruned_at,
        }
        with temp_file.open("w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        temp_file.replace(anchor_path)
        anchor_path.chmod(0o600)

    def _entries(self) -> list[tuple[dict[str, Any], AuditLogEntry]]:
        """Decodable entries in chain order, raw record alongside the model."""
        entries = []
        for stored in self._read_all():
            if stored.raw is None:
                continue
            try:
                entries.append((stored.raw, AuditLogEntry.model_validate(stored.raw)))
            except PydanticValidationError:
                logger.warning(
                    "Skipping audit record with unknown shape",
                    extra={"record": stored.ref},
                )
        return entries

    # Queries

    async def query(self, query: AuditLogQuery) -> AuditLogPage:
        """Filtered entries, newest first, paginated by skip/take."""
        entries = await asyncio.to_thread(self._entries)
        matched = [entry for _, entry in entries if self._matches(entry, query)]
        matched.sort(key=lambda e: e.timestamp, reverse=True)

        page_entries = matched[query.skip : query.skip + query.take]
        return AuditLogPage(
            entries=page_entries,
            total_count=len(matched),
            page=query.skip // query.take + 1,
            page_size=query.take,
            has_more=query.skip + query.take < len(matched),
        )

    @staticmethod
    def _matches(entry: AuditLogEntry, query: AuditLogQuery) -> bool:
        if query.from_time and entry.timestamp < query.from_time:
            return False
        if query.to_time and entry.timestamp > query.to_time:
            return False
        if query.category and entry.category != query.category:
            return False
        if query.action and entry.action != query.action:
            return False
        if query.result and entry.result != query.result:
            return False
        return not (query.user_id and entry.user_id != query.user_id)

    async def verify_chain(self, start: int = 0, end: int | None = None) -> ChainVerification:
        """
        Recompute signatures and links for entries [start, end).

        Indexes count retained entries in chain order. Entries before start
        are not checked but still provide the link for the first checked one.
        The first inconsistent entry is reported in broken_at: for a modified
        entry that is the entry itself, for a removed entry its successor.
        """
        records, tip = await self._snapshot()
        return self._verify(records, tip, start, end)

    async def _snapshot(self) -> tuple[list[_StoredRecord], str]:
        """Stored records and the tip they should end at, read without a concurrent append."""
        async with self._lock:
            records = await asyncio.to_thread(self._read_all)
            return records, self._tip

    def _verify(
        self,
        records: list[_StoredRecord],
        tip: str,
        start: int,
        end: int | None,
    ) -> ChainVerification:
        anchor = self._anchor.signature
        stop = len(records) if end is None else min(end, len(records))
        expected_previous = anchor
        checked = 0

        for index, stored in enumerate(records[:stop]):
            raw = stored.raw
            in_range = index >= start
            if raw is None:
                if in_range:
                    return ChainVerification(
                        valid=False,
                        broken_at=stored.ref,
                        checked_entries=checked,
                        reason="Record is not valid JSON",
                        anchor=anchor,
                    )
                expected_previous = ""
                continue

            if in_range:
                checked += 1
                if raw.get("previous_hash") != expected_previous:
                    return ChainVerification(
                        valid=False,
                        broken_at=stored.ref,
                        checked_entries=checked,
                        reason="previous_hash does not match the preceding entry",
                        anchor=anchor,
                    )
                if raw.get("signature") != compute_signature(raw):
                    return ChainVerification(
                        valid=False,
                        broken_at=stored.ref,
                        checked_entries=checked,
                        reason="Signature does not match record content",
                        anchor=anchor,
                    )
            expected_previous = str(raw.get("signature", ""))

        # Tail truncation only shows against the tip held in memory
        if self._initialized and stop == len(records) and expected_previous != tip:
            return ChainVerification(
                valid=False,
                broken_at=records[-1].ref if records else None,
                checked_entries=checked,
                reason="Stored chain does not end at the current tip",
                anchor=anchor,
            )

        return ChainVerification(valid=True, checked_entries=checked, anchor=anchor)

    async def export(
        self,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
        category: AuditCategory | None = None,
        exported_by: str = "System",
    ) -> AuditExport:
        """Stored records in chain order plus a verification of the whole chain."""
        records, tip = await self._snapshot()
        verification = self._verify(records, tip, 0, None)
        query = AuditLogQuery(from_time=from_time, to_time=to_time, category=category)

        selected = []
        for stored in records:
            if stored.raw is None:
                continue
            try:
                entry = AuditLogEntry.model_validate(stored.raw)
            except PydanticValidationError:
                continue
            if self._matches(entry, query):
                selected.append(stored.raw)

        return AuditExport(
            exported_at=self._clock(),
            exported_by=exported_by,
            from_time=from_time,
            to_time=to_time,
            total_entries=len(selected),
            verification=verification,
            entries=selected,
        )

    async def status(self) -> AuditLogStatus:
        def collect() -> AuditLogStatus:
            segments = self._segments()
            entries = [entry for _, entry in self._entries()]
            size = 0
            for segment in segments:
                try:
                    size += segment.path.stat().st_size
                except FileNotFoundError:
                    continue
            timestamps = [e.timestamp for e in entries]
            return AuditLogStatus(
                storage_path=str(self.storage_path),
                total_entries=len(entries),
                segment_count=len(segments),
                storage_size_bytes=size,
                oldest_entry=min(timestamps) if timestamps else None,
                newest_entry=max(timestamps) if timestamps else None,
                last_signature=self._tip,
                retention_days=self.retention_days,
                max_entries_per_segment=self.max_entries_per_segment,
                entries_by_category=dict(Counter(e.category.value for e in entries)),
                entries_by_result=dict(Counter(e.result.value for e in entries)),
            )

        return await asyncio.to_thread(collect)

    async def summary(self, days: int = 7) -> AuditSummary:
        period_end = self._clock()
        period_start = period_end - timedelta(days=days)
        entries = await asyncio.to_thread(self._entries)
        in_period = [e for _, e in entries if period_start <= e.timestamp <= period_end]
        by_day = Counter(e.timestamp.astimezone(UTC).strftime("%Y-%m-%d") for e in in_period)

        failures = [e for e in in_period if e.result in (AuditResult.FAILURE, AuditResult.ERROR)]
        failures.sort(key=lambda e: e.timestamp, reverse=True)
        return AuditSummary(
            total_entries=len(in_period),
            period_start=period_start,
            period_end=period_end,
            by_category=dict(Counter(e.category.value for e in in_period)),
            by_result=dict(Counter(e.result.value for e in in_period)),
            by_day=dict(sorted(by_day.items())),
            recent_failures=failures[:10],
        )

    async def apply_retention(self, now: datetime | None = None) -> int:
        """
        Prune segments whose newest entry is older than the retention period.

        Only a contiguous run from the old end of the chain is pruned, never
        the active segment. The anchor is written before any file is deleted.

        Returns:
            Number of entries pruned
        """
        now = now or self._clock()
        cutoff = now - timedelta(days=self.retention_days)

        async with self._lock:
            pruned_segments, pruned_entries = await asyncio.to_thread(self._prune, cutoff, now)

        if pruned_segments:
            await self.record(
                AuditCategory.SYSTEM,
                AuditAction.AUDIT_RETENTION,
                AuditResult.SUCCESS,
                details=(
                    f"Pruned {pruned_segments} audit segment(s) older than "
                    f"{self.retention_days} days"
                ),
                affected_item_count=pruned_entries,
            )
        return pruned_entries

    def _prune(self, cutoff: datetime, now: datetime) -> tuple[int, int]:
        active_seq = self._active.segment.seq if self._active else None
        candidates: list[tuple[_Segment, list[_StoredRecord]]] = []

        for segment in self._segments():
            if segment.seq == active_seq:
                break
            records = self._read_segment(segment)
            timestamps = [
                ts
                for ts in (_parse_timestamp(r.raw.get("timestamp")) for r in records if r.raw)
                if ts is not None
            ]
            if timestamps and max(timestamps) >= cutoff:
                break
            candidates.append((segment, records))

        if not candidates:
            return 0, 0

        anchor_signature = self._anchor.signature
        pruned_entries = 0
        for _, records in candidates:
            for stored in records:
                if stored.raw is not None:
                    anchor_signature = str(stored.raw.get("signature", anchor_signature))
                    pruned_entries += 1

        anchor = _Anchor(
            signature=anchor_signature,
            pruned_through_seq=candidates[-1][0].seq,
            pruned_at=now.isoformat(),
            extra={"pruned_entries_total": self._anchor.extra.get("pruned_entries_total", 0) + pruned_entries},
        )
        self._write_anchor(anchor)
        self._anchor = anchor

        for segment, _ in candidates:
            segment.path.unlink(missing_ok=True)

        logger.info(
            "Audit retention applied",
            extra={
                "pruned_segments": len(candidates),
                "pruned_entries": pruned_entries,
                "pruned_through_seq": anchor.pruned_through_seq,
            },
        )
        return len(candidates), pruned_entries
