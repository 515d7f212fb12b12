"""
Snapshot coordinator for BillVault.

Takes a consistent point-in-time snapshot of named entity sets and produces
a Manifest:
1. Validate the request (no manifest is created for invalid requests)
2. Save the manifest as pending, then in_progress
3. Read every set inside ONE snapshot-isolated transaction
4. Checksum each set, derive the master checksum
5. Store the payload in the content-addressed arena
6. Save the manifest as completed, then self-verify from the stored bytes
7. Emit an audit entry and hand the manifest to replication

Invariants:
    - All sets of one manifest observe the same logical instant
    - A failed manifest never references a payload
    - A manifest past validation ends completed or failed, never in_progress
    - The read transaction is always aborted (it never writes)
    - Replication never delays or changes manifest completion

How to change safely:
    - Keep the payload written before the manifest is marked completed
    - Restore safety snapshots pass lock_held=True; never take the shared
      lock while the exclusive lock is held by the caller
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from ..audit import AuditEntry, AuditSink, LoggingAuditSink, record_safely
from ..catalog.arena import PayloadArena
from ..catalog.index import ManifestIndex
from ..catalog.payload import encode_payload
from ..config import EntitySetConfig
from ..coordination import RestoreLock
from ..errors import BackupError, SnapshotRequestError
from ..integrity.checksum import master_checksum, set_checksum
from ..integrity.verifier import IntegrityVerifier
from ..models import (
    Manifest,
    ManifestKind,
    ManifestStatus,
    RetentionPolicy,
    to_iso,
    utcnow,
)
from ..store.base import EntityStore, IsolationLevel, Record

if TYPE_CHECKING:
    from ..replication.manager import ReplicationManager

logger = logging.getLogger(__name__)


def _describe(error: Exception) -> str:
    return error.message if isinstance(error, BackupError) else f"{type(error).__name__}: {error}"


class SnapshotCoordinator:
    """Creates manifests from consistent entity store snapshots.

    Example:
        >>> coordinator = SnapshotCoordinator(store, index, arena, verifier, lock)
        >>> manifest = await coordinator.create_snapshot(
        ...     ManifestKind.FULL, ["users", "bills"], RetentionPolicy(days=90)
        ... )
        >>> manifest.status
        <ManifestStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        store: EntityStore,
        index: ManifestIndex,
        arena: PayloadArena,
        verifier: IntegrityVerifier,
        lock: RestoreLock,
        audit: AuditSink | None = None,
        entity_sets: EntitySetConfig | None = None,
        replication: ReplicationManager | None = None,
        isolation: IsolationLevel = IsolationLevel.SNAPSHOT,
        default_retention: RetentionPolicy | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            store: Entity store adapter
            index: Manifest index
            arena: Payload arena
            verifier: Integrity verifier used for self-verification
            lock: Process-wide restore lock (taken in shared mode)
            audit: Audit sink
            entity_sets: Configured full / incremental entity sets
            replication: Replication manager (optional)
            isolation: Isolation level of the snapshot transaction
            default_retention: Retention used when a request gives none
        """
        self.store = store
        self.index = index
        self.arena = arena
        self.verifier = verifier
        self.lock = lock
        self.audit = audit or LoggingAuditSink()
        self.entity_sets = entity_sets or EntitySetConfig()
        self.replication = replication
        self.isolation = isolation
        self.default_retention = default_retention or RetentionPolicy(days=90)

        self._created_count = 0
        self._failed_count = 0
        self._last_manifest_id: str | None = None

    async def create_snapshot(
        self,
        kind: ManifestKind,
        entity_set_names: list[str] | None = None,
        retention_policy: RetentionPolicy | None = None,
        user_id: str = "system",
        lock_held: bool = False,
    ) -> Manifest:
        """Snapshot entity sets into a new manifest.

        Args:
            kind: Full or incremental
            entity_set_names: Sets to capture (defaults to the configured sets for kind)
            retention_policy: Retention of the new manifest
            user_id: Acting user
            lock_held: Caller already holds the restore lock exclusively

        Returns:
            The manifest, completed or failed

        Raises:
            SnapshotRequestError: If the request violates a precondition
        """
        policy = retention_policy or self.default_retention
        names = self._validate_request(kind, entity_set_names, policy)

        if lock_held:
            return await self._create(kind, names, policy, user_id)
        async with self.lock.shared():
            return await self._create(kind, names, policy, user_id)

    def _validate_request(
        self,
        kind: ManifestKind,
        entity_set_names: list[str] | None,
        policy: RetentionPolicy,
    ) -> list[str]:
        if entity_set_names is None:
            if kind == ManifestKind.INCREMENTAL:
                entity_set_names = list(self.entity_sets.incremental_sets)
            else:
                entity_set_names = list(self.entity_sets.full_sets)

        names = sorted(set(entity_set_names))
        if not names:
            raise SnapshotRequestError("At least one entity set is required")
        invalid = [name for name in names if not isinstance(name, str) or not name.strip()]
        if invalid:
            raise SnapshotRequestError(f"Invalid entity set names: {invalid!r}")
        if kind == ManifestKind.INCREMENTAL:
            allowed = set(self.entity_sets.incremental_sets)
            disallowed = [name for name in names if name not in allowed]
            if disallowed:
                raise SnapshotRequestError(
                    f"Incremental backups only cover {sorted(allowed)}, got {disallowed}",
                    details={"disallowed": disallowed},
                )
        if not policy.is_valid:
            raise SnapshotRequestError(
                f"Retention must be at least 1 day, got {policy.days}",
                details={"retention_days": policy.days},
            )
        return names

    async def _create(
        self,
        kind: ManifestKind,
        names: list[str],
        policy: RetentionPolicy,
        user_id: str,
    ) -> Manifest:
        created_at = utcnow()
        manifest = Manifest(
            manifest_id=f"backup_{uuid.uuid4().hex}",
            created_at=created_at,
            kind=kind,
            entity_sets=names,
            retention_until=policy.retention_until(created_at),
            created_by=user_id,
        )
        await self.index.save(manifest)

        manifest.status = ManifestStatus.IN_PROGRESS
        await self.index.save(manifest)
        logger.info(
            f"Creating {kind.value} snapshot {manifest.manifest_id}",
            extra={"manifest_id": manifest.manifest_id, "entity_sets": names},
        )

        try:
            snapshot = await self._read_sets(names)
        except Exception as e:
            return await self._fail(manifest, f"snapshot read failed: {_describe(e)}", e)

        try:
            per_set = {name: set_checksum(snapshot[name]) for name in names}
            payload = encode_payload(manifest.manifest_id, to_iso(created_at), kind.value, snapshot)
        except Exception as e:
            return await self._fail(manifest, f"snapshot serialization failed: {_describe(e)}", e)

        payload_ref: str | None = None
        try:
            payload_ref = self.arena.put(payload)
            manifest.per_set_checksum = per_set
            manifest.master_checksum = master_checksum(per_set)
            manifest.size_bytes = len(payload)
            manifest.payload_ref = payload_ref
            manifest.record_counts = {name: len(snapshot[name]) for name in names}
            manifest.status = ManifestStatus.COMPLETED
            await self.index.save(manifest)
        except Exception as e:
            if payload_ref is not None:
                await self._discard_payload(manifest.manifest_id, payload_ref)
            manifest.per_set_checksum = {}
            manifest.master_checksum = None
            manifest.size_bytes = 0
            manifest.payload_ref = None
            manifest.record_counts = {}
            manifest.status = ManifestStatus.IN_PROGRESS
            return await self._fail(manifest, f"snapshot persistence failed: {_describe(e)}", e)

        issues = await self.verifier.check_manifest(manifest)
        if issues:
            logger.error(
                f"Snapshot {manifest.manifest_id} failed self-verification: {issues}",
                extra={"manifest_id": manifest.manifest_id, "issues": issues},
            )
        else:
            manifest.verified = True
            await self.index.update_verified(manifest.manifest_id, True)

        self._created_count += 1
        self._last_manifest_id = manifest.manifest_id
        logger.info(
            f"Snapshot {manifest.manifest_id} completed",
            extra={
                "manifest_id": manifest.manifest_id,
                "kind": kind.value,
                "size_bytes": manifest.size_bytes,
                "record_counts": manifest.record_counts,
                "verified": manifest.verified,
            },
        )

        await record_safely(
            self.audit,
            AuditEntry(
                action="create",
                user_id=user_id,
                after={
                    "manifestId": manifest.manifest_id,
                    "kind": kind.value,
                    "sizeBytes": manifest.size_bytes,
                    "entitySets": names,
                },
            ),
        )

        if self.replication is not None and manifest.verified:
            self.replication.replicate(manifest)
        return manifest

    async def _read_sets(self, names: list[str]) -> dict[str, list[Record]]:
        txn = await self.store.begin_transaction(self.isolation)
        try:
            return {name: await txn.read_all(name) for name in names}
        finally:
            await txn.abort()

    async def _discard_payload(self, manifest_id: str, payload_ref: str) -> None:
        try:
            if await self.index.count_payload_refs(payload_ref, exclude=manifest_id) == 0:
                self.arena.delete(payload_ref)
        except (BackupError, OSError) as e:
            logger.warning(f"Could not discard payload {payload_ref}: {e}")

    async def _fail(
        self, manifest: Manifest, reason: str, error: Exception | None = None
    ) -> Manifest:
        manifest.status = ManifestStatus.FAILED
        manifest.error = reason
        await self.index.save(manifest)
        self._failed_count += 1
        logger.error(
            f"Snapshot {manifest.manifest_id} failed: {reason}",
            exc_info=error if error is not None and not isinstance(error, BackupError) else None,
            extra={"manifest_id": manifest.manifest_id, "kind": manifest.kind.value},
        )
        await record_safely(
            self.audit,
            AuditEntry(
                action="backup_failed",
                user_id=manifest.created_by,
                after={
                    "manifestId": manifest.manifest_id,
                    "kind": manifest.kind.value,
                    "entitySets": manifest.entity_sets,
                    "error": reason,
                },
            ),
        )
        return manifest

    @property
    def stats(self) -> dict[str, Any]:
        """Get coordinator statistics."""
        return {
            "snapshots_created": self._created_count,
            "snapshots_failed": self._failed_count,
            "last_manifest_id": self._last_manifest_id,
        }
