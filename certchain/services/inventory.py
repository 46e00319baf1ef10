"""Component inventory (SBOM / vulnerability summary) providers."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from certchain.models.certificate import ComponentSummary

logger = logging.getLogger(__name__)


@runtime_checkable
class ComponentInventoryProvider(Protocol):
    """Supplies per-component SBOM and vulnerability summaries.

    Integrity certificates include whatever the provider returns; a provider
    failure never blocks certificate issuance.
    """

    async def component_summaries(self) -> list[ComponentSummary]: ...


class JsonFileInventory:
    """Reads summaries from a JSON file produced by an external SBOM scanner.

    The file holds either a list of `{component_name, version,
    vulnerability_count}` objects or a document with a `components` list.
    A missing file means no components.
    """

    def __init__(self, summary_file: Path):
        self.summary_file = Path(summary_file)

    async def component_summaries(self) -> list[ComponentSummary]:
        return await asyncio.to_thread(self._load)

    def _load(self) -> list[ComponentSummary]:
        if not self.summary_file.exists():
            logger.debug("No SBOM summary file", extra={"file": str(self.summary_file)})
            return []

        with self.summary_file.open("r", encoding="utf-8") as f:
            data = json.load(f)
        items = data.get("components", []) if isinstance(data, dict) else data
        return [ComponentSummary.model_validate(item) for item in items]


class EmptyInventory:
    """Provider used when no SBOM source is configured."""

    async def component_summaries(self) -> list[ComponentSummary]:
        return []
