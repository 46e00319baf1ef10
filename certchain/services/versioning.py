"""Calendar-based release version allocation (YYYY.MM.NN)."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from certchain.exceptions import VersionExhaustedError

logger = logging.getLogger(__name__)

CALVER_PATTERN = re.compile(r"^(\d{4})\.(\d{2})\.(\d{2})$")
MAX_INCREMENT = 99


class VersionAllocator:
    """Compute the next release tag for a repository.

    Allocation is a pure function of the existing tags and the clock. The
    caller creates the tag; calling twice without a new tag returns the same
    version. Uniqueness under concurrency comes from the caller holding the
    repository's exclusive lock across allocate-and-tag.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or (lambda: datetime.now(UTC))

    def next_version(
        self,
        repository: str,
        existing_tags: Iterable[str],
        now: datetime | None = None,
    ) -> str:
        """
        Return the next CalVer tag for the current UTC year and month.

        Args:
            repository: Repository name (for logging and error context)
            existing_tags: All tag names of the repository; non-CalVer tags
                are ignored
            now: Override of the clock

        Returns:
            Version string such as "2025.12.04"

        Raises:
            VersionExhaustedError: If the month already has release 99
        """
        current = now or self._clock()
        if current.tzinfo is not None:
            current = current.astimezone(UTC)
        year, month = current.year, current.month

        increments = []
        for tag in existing_tags:
            match = CALVER_PATTERN.match(tag.strip())
            if match is None:
                continue
            if int(match.group(1)) == year and int(match.group(2)) == month:
                increments.append(int(match.group(3)))

        if not increments:
            version = f"{year:04d}.{month:02d}.01"
        else:
            highest = max(increments)
            if highest >= MAX_INCREMENT:
                msg = (
                    f"Release counter exhausted for {year:04d}.{month:02d} "
                    f"({MAX_INCREMENT} releases this month)"
                )
                raise VersionExhaustedError(
                    msg,
                    context={
                        "repository": repository,
                        "year": year,
                        "month": month,
                        "highest": highest,
                    },
                )
            version = f"{year:04d}.{month:02d}.{highest + 1:02d}"

        logger.debug(
            "Next release version computed",
            extra={
                "repository": repository,
                "version": version,
                "month_releases": len(increments),
            },
        )
        return version
