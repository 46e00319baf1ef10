"""
Per-repository readers/writer locks.

Every git operation on a repository runs under that repository's lock:
mutations (commit, push, discard, revert, tag) take the exclusive side,
status and history queries take the shared side. Different repositories
never block each other.

IMPORTANT: The registry is created inside the running event loop via
init_repository_locks(), not at module import time, so the locks belong to
the application's event loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Global reference to the registry (created in lifespan via init_repository_locks())
_registry: RepositoryLockRegistry | None = None


class RepositoryLock:
    """Readers/writer lock for one repository working tree.

    A waiting writer blocks new readers, so a steady stream of status
    polls cannot starve a push.
    """

    def __init__(self, path: str):
        self.path = path
        self._condition = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def locked_exclusive(self) -> bool:
        return self._writer

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(
                lambda: not self._writer and self._waiting_writers == 0
            )
            self._readers += 1
        try:
            yield
        finally:
            async with self._condition:
                self._readers -= 1
                if self._readers == 0:
                    self._condition.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._condition:
            self._waiting_writers += 1
            try:
                await self._condition.wait_for(
                    lambda: not self._writer and self._readers == 0
                )
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._condition:
                self._writer = False
                self._condition.notify_all()


class RepositoryLockRegistry:
    """Hands out one RepositoryLock per resolved repository path."""

    def __init__(self) -> None:
        self._locks: dict[str, RepositoryLock] = {}

    def for_path(self, path: str | Path) -> RepositoryLock:
        key = str(Path(path).resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = RepositoryLock(key)
            self._locks[key] = lock
            logger.debug("Repository lock created", extra={"path": key})
        return lock

    def __len__(self) -> int:
        return len(self._locks)


def _log_late_completion(operation: str, context: dict[str, Any]) -> Callable[[asyncio.Task], None]:
    def callback(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning(
                "Timed-out operation was cancelled",
                extra={"operation": operation, **context},
            )
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "Timed-out operation finished with error",
                extra={
                    "operation": operation,
                    "error": str(error),
                    "error_type": type(error).__name__,
                    **context,
                },
            )
        else:
            logger.info(
                "Timed-out operation finished after caller gave up",
                extra={"operation": operation, **context},
            )

    return callback


async def run_serialized(
    lock: RepositoryLock,
    func: Callable[[], T],
    *,
    exclusive: bool,
    timeout: float,
    operation: str,
    context: dict[str, Any] | None = None,
) -> T:
    """
    Run blocking func in a worker thread while holding lock.

    The timeout covers waiting for the lock and running func. When it
    expires the caller gets TimeoutError, but the dispatched work is not
    cancelled: the git process runs to completion and only then releases
    the lock. Its late outcome is logged.

    Raises:
        TimeoutError: If func did not finish within timeout seconds
    """
    context = context or {}

    async def _locked() -> T:
        guard = lock.write() if exclusive else lock.read()
        async with guard:
            return await asyncio.to_thread(func)

    task = asyncio.create_task(_locked())
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except TimeoutError:
        logger.error(
            "Repository operation timed out",
            extra={
                "operation": operation,
                "timeout_seconds": timeout,
                "exclusive": exclusive,
                **context,
            },
        )
        task.add_done_callback(_log_late_completion(operation, context))
        raise


async def init_repository_locks() -> RepositoryLockRegistry:
    """
    Initialize the lock registry in the running event loop.

    Raises:
        RuntimeError: If called when the registry is already initialized
    """
    global _registry
    if _registry is not None:
        raise RuntimeError("Repository locks already initialized")
    _registry = RepositoryLockRegistry()
    logger.debug("Repository lock registry initialized in event loop")
    return _registry


async def reset_locks_for_testing() -> None:
    """
    Reset the registry for test teardown (testing only).

    Never call this in production code.
    """
    global _registry
    _registry = None
