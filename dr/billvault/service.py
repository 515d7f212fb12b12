"""
BackupService - the single entry point to BillVault.

Owns every component and all mutable state:
- Entity store adapter, manifest index and payload arena
- Snapshot coordinator and backup scheduler
- Integrity verifier
- Replication manager (health loop)
- Retention manager (purge loop)
- Restore orchestrator, restore lock and manifest pins

Callers (admin endpoints, the CLI) use the operations exposed here:
create_snapshot, list_manifests, get_manifest, verify, restore,
replication_health, purge_expired, stats.

Invariants:
    - One BackupService per entity store per process
    - start() only launches background loops; operations work without it
    - stop() waits for in-flight replication pushes before closing transports

How to change safely:
    - Wire new components here; components never construct each other
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from .audit import (
    AuditSink,
    JsonlAuditSink,
    LoggingAuditSink,
    LoggingOperatorAlert,
    OperatorAlert,
)
from .catalog.arena import PayloadArena
from .catalog.index import ManifestIndex
from .catalog.payload import decode_payload
from .config import ServiceConfig
from .coordination import ManifestPins, RestoreLock
from .integrity.verifier import IntegrityVerifier
from .models import (
    Manifest,
    ManifestKind,
    ManifestStatus,
    RestoreResult,
    RetentionPolicy,
    VerificationResult,
    utcnow,
)
from .replication.base import ReplicaTransport, create_replica_transport
from .replication.manager import ReplicationManager
from .restore.orchestrator import RestoreOrchestrator
from .retention.manager import PurgeResult, RetentionManager
from .snapshot.coordinator import SnapshotCoordinator
from .snapshot.scheduler import BackupScheduler
from .store.base import EntityStore
from .store.sqlite import SQLiteEntityStore

logger = logging.getLogger(__name__)


class BackupService:
    """Backup, verification, replication, retention and restore service.

    Example:
        >>> service = BackupService(ServiceConfig.from_env())
        >>> await service.start()
        >>> manifest = await service.create_snapshot("full")
        >>> result = await service.restore(manifest.manifest_id, sets=["bills"])
        >>> await service.stop()
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        store: EntityStore | None = None,
        transport: ReplicaTransport | None = None,
        audit: AuditSink | None = None,
        alert: OperatorAlert | None = None,
    ) -> None:
        """Initialize the service and wire its components.

        Args:
            config: Service configuration (loaded from env if not provided)
            store: Entity store adapter (SQLite store at the configured path by default)
            transport: Replica transport (from configuration by default)
            audit: Audit sink (JSON lines file if configured, else log)
            alert: Operator alert channel
        """
        self.config = config or ServiceConfig.from_env()
        storage = self.config.storage
        data_dir = Path(storage.data_dir)

        self.store = store or SQLiteEntityStore(
            storage.store_path,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        self.index = ManifestIndex(data_dir, busy_timeout_ms=storage.busy_timeout_ms)
        self.arena = PayloadArena(data_dir)
        self.lock = RestoreLock()
        self.pins = ManifestPins()

        if audit is None:
            audit = JsonlAuditSink(self.config.audit.path) if self.config.audit.path else LoggingAuditSink()
        self.audit = audit
        self.alert = alert or LoggingOperatorAlert()

        self.retention_policy = RetentionPolicy(days=self.config.retention.days)
        self.safety_retention_policy = RetentionPolicy(days=self.config.retention.safety_days)

        self.replication = ReplicationManager.from_config(
            self.config.replication,
            transport or create_replica_transport(self.config.replication),
            self.arena,
            self.index,
        )
        verification = self.config.verification
        self.verifier = IntegrityVerifier(
            self.index,
            self.arena,
            repair_source=self.replication,
            timestamp_fields=self.config.entity_sets.timestamp_fields,
            sample_size=verification.sample_size,
            reference_rules=verification.reference_rules,
            timeout_seconds=verification.timeout_seconds,
        )
        self.coordinator = SnapshotCoordinator(
            self.store,
            self.index,
            self.arena,
            self.verifier,
            self.lock,
            audit=self.audit,
            entity_sets=self.config.entity_sets,
            replication=self.replication,
            default_retention=self.retention_policy,
        )
        self.retention = RetentionManager(
            self.index,
            self.arena,
            self.lock,
            self.pins,
            audit=self.audit,
            interval_seconds=self.config.retention.purge_interval_seconds,
        )
        self.orchestrator = RestoreOrchestrator(
            self.store,
            self.index,
            self.arena,
            self.verifier,
            self.coordinator,
            self.lock,
            self.pins,
            audit=self.audit,
            alert=self.alert,
            entity_sets=self.config.entity_sets,
            safety_retention=self.safety_retention_policy,
        )
        self.scheduler = BackupScheduler(
            self.coordinator,
            self.retention,
            self.config.entity_sets,
            self.config.schedule,
            self.retention_policy,
        )

        self._initialized = False
        self._running = False
        self._tasks: list[asyncio.Task] = []

    async def initialize(self) -> None:
        """Create catalog and entity store schemas. Safe to call repeatedly."""
        if self._initialized:
            return
        await self.index.initialize()
        if isinstance(self.store, SQLiteEntityStore):
            await self.store.initialize(self.config.entity_sets.full_sets)
        self._initialized = True

    async def start(self) -> None:
        """Initialize and launch the background loops."""
        if self._running:
            logger.warning("Backup service already running")
            return

        logger.info("Starting backup service")
        self.config.log_config()
        await self.initialize()

        self._tasks.append(asyncio.create_task(self.replication.start()))
        self._tasks.append(asyncio.create_task(self.retention.start()))
        if self.config.schedule.enabled:
            self._tasks.append(asyncio.create_task(self.scheduler.start()))

        self._running = True
        logger.info(
            "Backup service started",
            extra={"replica_nodes": len(self.replication.nodes), "schedule_enabled": self.config.schedule.enabled},
        )

    async def stop(self) -> None:
        """Stop the background loops and drain replication."""
        if not self._running:
            await self.replication.stop()
            return

        logger.info("Stopping backup service")
        await self.scheduler.stop()
        await self.retention.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.replication.stop()
        self._running = False
        logger.info("Backup service stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def create_snapshot(
        self,
        kind: ManifestKind | str = ManifestKind.FULL,
        sets: list[str] | None = None,
        retention_days: int | None = None,
        user_id: str = "system",
    ) -> Manifest:
        """Take a snapshot (defaults: configured sets for the kind, configured retention)."""
        await self.initialize()
        policy = RetentionPolicy(days=retention_days) if retention_days is not None else self.retention_policy
        return await self.coordinator.create_snapshot(ManifestKind(kind), sets, policy, user_id=user_id)

    async def list_manifests(
        self,
        kind: ManifestKind | str | None = None,
        status: ManifestStatus | str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[Manifest]:
        """Manifest history, newest first."""
        await self.initialize()
        return await self.index.list_manifests(
            kind=ManifestKind(kind) if kind is not None else None,
            status=ManifestStatus(status) if status is not None else None,
            start=start,
            end=end,
            limit=limit,
        )

    async def get_manifest(self, manifest_id: str) -> Manifest:
        """Get a manifest by id (raises ManifestNotFoundError)."""
        await self.initialize()
        return await self.index.require(manifest_id)

    async def inspect_manifest(self, manifest_id: str) -> dict[str, Any]:
        """Manifest plus the record counts actually present in its payload."""
        manifest = await self.get_manifest(manifest_id)
        details = manifest.to_dict()
        if manifest.payload_ref is not None:
            envelope = decode_payload(self.arena.get(manifest.payload_ref))
            details["payload_record_counts"] = envelope.record_counts()
        return details

    async def verify(
        self, manifest_id: str, deep: bool = False, repair: bool = False
    ) -> VerificationResult:
        await self.initialize()
        return await self.verifier.verify(manifest_id, deep=deep, repair=repair)

    async def restore(
        self,
        manifest_id: str,
        sets: list[str] | None = None,
        point_in_time: datetime | None = None,
        dry_run: bool = False,
        user_id: str = "system",
    ) -> RestoreResult:
        await self.initialize()
        return await self.orchestrator.restore(
            manifest_id,
            sets=sets,
            point_in_time=point_in_time,
            dry_run=dry_run,
            user_id=user_id,
        )

    def replication_health(self) -> float:
        """Fraction of active replica nodes (observability only)."""
        return self.replication.replication_health()

    async def check_replication_health(self) -> dict[str, Any]:
        """Run a health check now."""
        await self.initialize()
        return await self.replication.check_health()

    async def purge_expired(self, now: datetime | None = None, user_id: str = "system") -> PurgeResult:
        await self.initialize()
        return await self.retention.purge_expired(now or utcnow(), user_id=user_id)

    async def stats(self) -> dict[str, Any]:
        """Manifest statistics plus replication health."""
        await self.initialize()
        manifest_stats = (await self.index.stats()).to_dict()
        manifest_stats["replication_health"] = self.replication_health()
        return manifest_stats
