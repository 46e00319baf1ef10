"""Capped, append-only JSON record logs (deployment certificates, backups)."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

M = TypeVar("M", bound=BaseModel)


class CappedRecordLog(Generic[M]):
    """
    Append-only list of records persisted as one JSON document.

    The document is `{"schema_version": 1, "entries": [...]}`, oldest entry
    first; a bare JSON list is accepted on read. When the log exceeds
    max_entries the oldest entries are evicted. Every write replaces the file
    atomically (temp file + rename, mode 0600). A file that cannot be parsed
    is moved aside to `<name>.corrupt-<timestamp>` and a fresh log is started.
    """

    def __init__(self, file_path: Path, model: type[M], max_entries: int):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.file_path = Path(file_path)
        self.model = model
        self.max_entries = max_entries
        self._lock = asyncio.Lock()

    async def entries(self) -> list[M]:
        """All retained entries, oldest first."""
        async with self._lock:
            return await asyncio.to_thread(self._load)

    async def recent(
        self,
        count: int | None = None,
        predicate: Callable[[M], bool] | None = None,
    ) -> list[M]:
        """Entries matching predicate, newest first, at most count."""
        entries = [e for e in reversed(await self.entries()) if predicate is None or predicate(e)]
        return entries if count is None else entries[:count]

    async def append(self, entry: M) -> M:
        return await self.append_with(lambda _existing: entry)

    async def append_with(self, build: Callable[[list[M]], M]) -> M:
        """
        Build an entry from the current contents and append it as one unit.

        build runs under the log's lock, so it can check the existing entries
        (e.g. for a free identifier) without racing another append.
        """
        async with self._lock:
            entries = await asyncio.to_thread(self._load)
            entry = build(entries)
            entries.append(entry)
            if len(entries) > self.max_entries:
                evicted = len(entries) - self.max_entries
                entries = entries[evicted:]
                logger.debug(
                    "Evicted oldest records",
                    extra={"file": str(self.file_path), "evicted": evicted},
                )
            await asyncio.to_thread(self._save, entries)
            return entry

    def _load(self) -> list[M]:
        if not self.file_path.exists():
            return []

        try:
            with self.file_path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            raw_entries = data.get("entries") if isinstance(data, dict) else data
            if not isinstance(raw_entries, list):
                raise ValueError("document has no entries list")
            return [self.model.model_validate(item) for item in raw_entries]
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError, PydanticValidationError) as e:
            self._quarantine(e)
            return []

    def _quarantine(self, error: Exception) -> None:
        stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        target = self.file_path.with_name(f"{self.file_path.name}.corrupt-{stamp}")
        logger.error(
            "Record log unreadable, moving aside and starting fresh",
            extra={
                "file": str(self.file_path),
                "moved_to": str(target),
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
        self.file_path.replace(target)

    def _save(self, entries: list[M]) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
        document = {
            "schema_version": SCHEMA_VERSION,
            "entries": [e.model_dump(mode="json") for e in entries],
        }

        try:
            with temp_file.open("w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
                f.flush()

            # Atomic rename
            temp_file.replace(self.file_path)
            self.file_path.chmod(0o600)
        except OSError as e:
            logger.error("Failed to save record log %s: %s", self.file_path, e)
            if temp_file.exists():
                temp_file.unlink()
            raise
