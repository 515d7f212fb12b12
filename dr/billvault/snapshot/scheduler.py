"""
Automated backup schedule.

Runs two independent loops:
- Full backup of the configured entity sets (default every 24h), followed
  by a retention purge
- Incremental backup of the mutable / append-only sets (default every 15m)

Each loop waits one interval before its first run. Failures are logged and
the loop continues; failed snapshots already emit a backup_failed audit entry.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from ..config import EntitySetConfig, ScheduleConfig
from ..models import ManifestKind, RetentionPolicy, utcnow
from .coordinator import SnapshotCoordinator

if TYPE_CHECKING:
    from ..retention.manager import RetentionManager

logger = logging.getLogger(__name__)


class BackupScheduler:
    """Background loop creating scheduled full and incremental backups.

    Example:
        >>> scheduler = BackupScheduler(coordinator, retention, entity_sets, schedule)
        >>> task = asyncio.create_task(scheduler.start())
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        coordinator: SnapshotCoordinator,
        retention: RetentionManager | None,
        entity_sets: EntitySetConfig,
        schedule: ScheduleConfig,
        retention_policy: RetentionPolicy,
    ) -> None:
        self.coordinator = coordinator
        self.retention = retention
        self.entity_sets = entity_sets
        self.schedule = schedule
        self.retention_policy = retention_policy

        self._running = False
        self._full_runs = 0
        self._incremental_runs = 0

    async def start(self) -> None:
        """Run both schedule loops until stopped."""
        if self._running:
            logger.warning("Backup scheduler already running")
            return

        self._running = True
        logger.info(
            "Starting backup scheduler",
            extra={
                "full_interval_seconds": self.schedule.full_interval_seconds,
                "incremental_interval_seconds": self.schedule.incremental_interval_seconds,
            },
        )

        loops = [self._loop("full", self.schedule.full_interval_seconds, self.run_full_backup)]
        if self.entity_sets.incremental_sets:
            loops.append(
                self._loop(
                    "incremental",
                    self.schedule.incremental_interval_seconds,
                    self.run_incremental_backup,
                )
            )

        try:
            await asyncio.gather(*loops)
        except asyncio.CancelledError:
            logger.info("Backup scheduler cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the scheduler loops."""
        self._running = False
        logger.info("Stopping backup scheduler")

    async def _loop(self, name: str, interval: int, job: Callable[[], Awaitable[Any]]) -> None:
        while self._running:
            await asyncio.sleep(interval)
            if not self._running:
                break
            try:
                await job()
            except Exception as e:
                logger.error(f"Scheduled {name} backup error: {e}", exc_info=True)

    async def run_full_backup(self) -> None:
        """Create a scheduled full backup, then purge expired manifests."""
        self._full_runs += 1
        await self.coordinator.create_snapshot(
            ManifestKind.FULL,
            list(self.entity_sets.full_sets),
            self.retention_policy,
        )
        if self.retention is not None:
            await self.retention.purge_expired(utcnow())

    async def run_incremental_backup(self) -> None:
        """Create a scheduled incremental backup."""
        self._incremental_runs += 1
        await self.coordinator.create_snapshot(
            ManifestKind.INCREMENTAL,
            list(self.entity_sets.incremental_sets),
            self.retention_policy,
        )

    @property
    def stats(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        return {
            "running": self._running,
            "full_runs": self._full_runs,
            "incremental_runs": self._incremental_runs,
        }
