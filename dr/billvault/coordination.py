"""
Process-wide coordination between backups, purges and restores.

RestoreLock is a reader/writer lock over the entity store:
- Backups and purges take it in shared mode
- A restore takes it exclusively from its safety snapshot through
  restoring / rolling_back; a second restore is rejected, not queued

ManifestPins tracks manifests referenced by in-flight restores so retention
never deletes them.

Invariants:
    - At most one exclusive holder at any time
    - exclusive() never waits for another exclusive holder; it raises LockContention
    - Shared holders wait while an exclusive holder is active
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .errors import LockContention

logger = logging.getLogger(__name__)


class RestoreLock:
    """Shared/exclusive lock guarding the entity store.

    Example:
        >>> lock = RestoreLock()
        >>> async with lock.shared():
        ...     await take_backup()
        >>> async with lock.exclusive("restore_123"):
        ...     await restore()
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer: str | None = None

    @property
    def holder(self) -> str | None:
        """Owner of the exclusive lock, if held."""
        return self._writer

    @property
    def readers(self) -> int:
        return self._readers

    @asynccontextmanager
    async def shared(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: self._writer is None)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @asynccontextmanager
    async def exclusive(self, owner: str) -> AsyncIterator[None]:
        """Hold the lock exclusively.

        Waits for in-flight shared holders (backups, purges) to finish.

        Raises:
            LockContention: If another owner already holds it exclusively
        """
        async with self._cond:
            if self._writer is not None:
                raise LockContention(
                    f"Restore already in progress ({self._writer})", holder=self._writer
                )
            # Claim first so new shared holders queue behind us
            self._writer = owner
            try:
                await self._cond.wait_for(lambda: self._readers == 0)
            except BaseException:
                self._writer = None
                self._cond.notify_all()
                raise
        logger.debug(f"Exclusive lock acquired by {owner}")
        try:
            yield
        finally:
            async with self._cond:
                self._writer = None
                self._cond.notify_all()
            logger.debug(f"Exclusive lock released by {owner}")


class ManifestPins:
    """Reference counts of manifests used by in-flight restores."""

    def __init__(self) -> None:
        self._pins: Counter[str] = Counter()

    def pin(self, manifest_id: str) -> None:
        self._pins[manifest_id] += 1

    def unpin(self, manifest_id: str) -> None:
        self._pins[manifest_id] -= 1
        if self._pins[manifest_id] <= 0:
            del self._pins[manifest_id]

    def is_pinned(self, manifest_id: str) -> bool:
        return self._pins[manifest_id] > 0

    def pinned(self) -> set[str]:
        return {manifest_id for manifest_id, count in self._pins.items() if count > 0}
