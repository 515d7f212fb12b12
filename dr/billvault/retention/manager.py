"""
Retention manager for BillVault.

Purges manifests whose retention has passed:
1. Skip manifests pinned by an in-flight restore
2. Delete the payload (unless another manifest still references it)
3. Delete the manifest row - the commit point of the purge

A crash between steps 2 and 3 leaves a row without a payload; the next purge
finds the row again and completes it.

Invariants:
    - purge_expired() is idempotent
    - Payload deletion always precedes metadata deletion
    - Purges run under the restore lock in shared mode
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..audit import AuditEntry, AuditSink, LoggingAuditSink, record_safely
from ..catalog.arena import PayloadArena
from ..catalog.index import ManifestIndex
from ..coordination import ManifestPins, RestoreLock
from ..models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PurgeResult:
    """Outcome of one purge pass."""

    purged: list[str] = field(default_factory=list)
    skipped_pinned: list[str] = field(default_factory=list)
    payloads_deleted: int = 0
    bytes_freed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "purged": list(self.purged),
            "skipped_pinned": list(self.skipped_pinned),
            "payloads_deleted": self.payloads_deleted,
            "bytes_freed": self.bytes_freed,
        }


class RetentionManager:
    """Deletes expired manifests and their payloads.

    Example:
        >>> retention = RetentionManager(index, arena, lock, pins)
        >>> result = await retention.purge_expired(utcnow())
        >>> result.purged
        ['backup_...']
    """

    def __init__(
        self,
        index: ManifestIndex,
        arena: PayloadArena,
        lock: RestoreLock,
        pins: ManifestPins,
        audit: AuditSink | None = None,
        interval_seconds: float = 3600,
    ) -> None:
        self.index = index
        self.arena = arena
        self.lock = lock
        self.pins = pins
        self.audit = audit or LoggingAuditSink()
        self.interval_seconds = interval_seconds

        self._running = False
        self._purged_count = 0

    async def purge_expired(self, now: datetime | None = None, user_id: str = "system") -> PurgeResult:
        """Purge every manifest whose retention_until is before now."""
        now = now or utcnow()
        result = PurgeResult()

        async with self.lock.shared():
            for manifest in await self.index.expired(now):
                if self.pins.is_pinned(manifest.manifest_id):
                    result.skipped_pinned.append(manifest.manifest_id)
                    logger.info(
                        f"Skipping purge of {manifest.manifest_id}: in use by a restore",
                        extra={"manifest_id": manifest.manifest_id},
                    )
                    continue

                if manifest.payload_ref is not None:
                    shared = await self.index.count_payload_refs(
                        manifest.payload_ref, exclude=manifest.manifest_id
                    )
                    if shared == 0 and self.arena.exists(manifest.payload_ref):
                        size = self.arena.size(manifest.payload_ref)
                        if self.arena.delete(manifest.payload_ref):
                            result.payloads_deleted += 1
                            result.bytes_freed += size

                if not await self.index.delete(manifest.manifest_id):
                    continue
                result.purged.append(manifest.manifest_id)
                self._purged_count += 1

                await record_safely(
                    self.audit,
                    AuditEntry(
                        action="purge",
                        user_id=user_id,
                        before={
                            "manifestId": manifest.manifest_id,
                            "kind": manifest.kind.value,
                            "status": manifest.status.value,
                            "retentionUntil": manifest.retention_until.isoformat(),
                            "sizeBytes": manifest.size_bytes,
                        },
                    ),
                )

        if result.purged:
            logger.info(
                f"Purged {len(result.purged)} expired manifests",
                extra={"purged": result.purged, "bytes_freed": result.bytes_freed},
            )
        return result

    async def start(self) -> None:
        """Run periodic purges until stopped."""
        if self._running:
            logger.warning("Retention loop already running")
            return

        self._running = True
        logger.info("Starting retention loop", extra={"interval_seconds": self.interval_seconds})
        try:
            while self._running:
                await asyncio.sleep(self.interval_seconds)
                if not self._running:
                    break
                try:
                    await self.purge_expired(utcnow())
                except Exception as e:
                    logger.error(f"Retention purge error: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Retention loop cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the retention loop."""
        self._running = False
        logger.info("Stopping retention loop")

    @property
    def stats(self) -> dict[str, Any]:
        return {"running": self._running, "purged": self._purged_count}
