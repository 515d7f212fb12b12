"""
Restore orchestrator for BillVault.

Restores a manifest into the entity store with automatic rollback:

    pending -> verifying -> (dry run) committed
                         -> restoring -> committed
                                      -> rolling_back -> rolled_back
            verifying failure -> failed

1. verifying: deep verification of the manifest; unverified -> failed
2. planning: per-set records to write, point-in-time filtering applied to
   the manifest's payload; a dry run stops here and writes nothing
3. safety snapshot: full snapshot of the live store taken under the
   exclusive restore lock; failure -> failed, nothing touched
4. restoring: each requested set is cleared and repopulated in its own
   serializable transaction
5. on any failure in 4: one recovery pass restores every requested set from
   the safety snapshot (no further safety snapshot), then the original error
   is raised as RestoreStepFailed; if recovery fails, an operator alert fires
   and RollbackFailed is raised

Invariants:
    - A non-dry-run operation holds a safety manifest before its first write
    - A second restore is rejected with LockContention before it verifies
      anything while another non-dry-run restore is in flight
    - The source and safety manifests are pinned against purge while in use
    - Once restoring begins, cancellation is deferred until commit or
      rollback finishes, then re-raised
    - Every destructive step records before/after count and checksum

How to change safely:
    - Never make recovery call restore(); it must stay a single pass
    - Keep point-in-time filtering ahead of the writes
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable
from datetime import datetime, timezone
from typing import Any, TypeVar

from ..audit import (
    AuditEntry,
    AuditSink,
    LoggingAuditSink,
    LoggingOperatorAlert,
    OperatorAlert,
    record_safely,
)
from ..catalog.arena import PayloadArena
from ..catalog.index import ManifestIndex
from ..catalog.payload import PayloadEnvelope, decode_payload
from ..config import EntitySetConfig
from ..coordination import ManifestPins, RestoreLock
from ..errors import (
    BackupError,
    LockContention,
    RestoreStepFailed,
    RollbackFailed,
    SafetySnapshotFailed,
    TransactionError,
    VerificationFailed,
)
from ..integrity.checksum import digest, set_checksum
from ..integrity.verifier import IntegrityVerifier
from ..models import (
    Manifest,
    ManifestKind,
    RestoreOperation,
    RestoreOutcome,
    RestoreResult,
    RetentionPolicy,
    record_timestamp,
    to_iso,
)
from ..snapshot.coordinator import SnapshotCoordinator
from ..store.base import EntityStore, IsolationLevel, Record

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RestoreOrchestrator:
    """Validates, dry-runs and executes restores with automatic rollback.

    Example:
        >>> orchestrator = RestoreOrchestrator(
        ...     store, index, arena, verifier, coordinator, lock, pins
        ... )
        >>> result = await orchestrator.restore("backup_...", sets=["bills"])
        >>> result.operation.outcome
        <RestoreOutcome.COMMITTED: 'committed'>
    """

    def __init__(
        self,
        store: EntityStore,
        index: ManifestIndex,
        arena: PayloadArena,
        verifier: IntegrityVerifier,
        coordinator: SnapshotCoordinator,
        lock: RestoreLock,
        pins: ManifestPins,
        audit: AuditSink | None = None,
        alert: OperatorAlert | None = None,
        entity_sets: EntitySetConfig | None = None,
        safety_retention: RetentionPolicy | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Entity store adapter
            index: Manifest index
            arena: Payload arena
            verifier: Integrity verifier
            coordinator: Snapshot coordinator (creates safety snapshots)
            lock: Process-wide restore lock
            pins: Manifest pins protecting in-use manifests from purge
            audit: Audit sink
            alert: Operator alert channel (fires when rollback fails)
            entity_sets: Configured entity sets (safety snapshot scope,
                point-in-time timestamp fields)
            safety_retention: Retention of safety snapshots
        """
        self.store = store
        self.index = index
        self.arena = arena
        self.verifier = verifier
        self.coordinator = coordinator
        self.lock = lock
        self.pins = pins
        self.audit = audit or LoggingAuditSink()
        self.alert = alert or LoggingOperatorAlert()
        self.entity_sets = entity_sets or EntitySetConfig()
        self.safety_retention = safety_retention or RetentionPolicy(days=7)

        self._operations: dict[str, RestoreOperation] = {}
        self._claimed: str | None = None

    def get_operation(self, operation_id: str) -> RestoreOperation | None:
        """Look up a restore operation started by this orchestrator."""
        return self._operations.get(operation_id)

    @property
    def operations(self) -> list[RestoreOperation]:
        return list(self._operations.values())

    @property
    def active_operation(self) -> RestoreOperation | None:
        """The restore currently holding the store, if any."""
        for operation in self._operations.values():
            if operation.outcome in (RestoreOutcome.RESTORING, RestoreOutcome.ROLLING_BACK):
                return operation
        return None

    async def restore(
        self,
        manifest_id: str,
        sets: list[str] | None = None,
        point_in_time: datetime | None = None,
        dry_run: bool = False,
        user_id: str = "system",
    ) -> RestoreResult:
        """Restore a manifest.

        Args:
            manifest_id: Manifest to restore
            sets: Entity sets to restore (None = all sets in the manifest)
            point_in_time: Discard records whose timestamp is after this time
            dry_run: Verify and plan only, write nothing
            user_id: Acting user

        Returns:
            RestoreResult; outcome committed on success (including dry runs),
            failed when verification or the safety snapshot failed

        Raises:
            ManifestNotFoundError: If the manifest does not exist
            LockContention: If another restore holds the store
            RestoreStepFailed: If a write failed and the store was rolled back
            RollbackFailed: If recovery from the safety snapshot failed
        """
        start = time.monotonic()
        manifest = await self.index.require(manifest_id)
        self._reject_if_busy(manifest_id)

        if point_in_time is not None and point_in_time.tzinfo is None:
            point_in_time = point_in_time.replace(tzinfo=timezone.utc)

        operation = RestoreOperation(
            operation_id=f"restore_{uuid.uuid4().hex}",
            manifest_id=manifest_id,
            requested_sets=sorted(set(sets)) if sets is not None else None,
            point_in_time=point_in_time,
            dry_run=dry_run,
            user_id=user_id,
        )
        self._operations[operation.operation_id] = operation
        if not dry_run:
            self._claimed = operation.operation_id
        result = RestoreResult(operation=operation)

        logger.info(
            f"Restore {operation.operation_id} of {manifest_id} requested",
            extra={
                "operation_id": operation.operation_id,
                "manifest_id": manifest_id,
                "requested_sets": operation.requested_sets,
                "point_in_time": to_iso(point_in_time),
                "dry_run": dry_run,
            },
        )

        self.pins.pin(manifest_id)
        try:
            await self._run(manifest, operation, result)
        finally:
            self.pins.unpin(manifest_id)
            if self._claimed == operation.operation_id:
                self._claimed = None
            result.duration_ms = int((time.monotonic() - start) * 1000)
        return result

    def _reject_if_busy(self, manifest_id: str) -> None:
        holder = self._claimed or self.lock.holder
        if holder is None:
            return
        logger.warning(
            f"Restore of {manifest_id} rejected: {holder} is in progress",
            extra={"manifest_id": manifest_id, "holder": holder},
        )
        raise LockContention(f"Restore already in progress ({holder})", holder=holder)

    async def _run(self, manifest: Manifest, operation: RestoreOperation, result: RestoreResult) -> None:
        operation.outcome = RestoreOutcome.VERIFYING

        targets = operation.requested_sets
        if targets is None:
            targets = sorted(manifest.entity_sets)
        missing = [name for name in targets if name not in manifest.entity_sets]
        if not targets or missing:
            await self._fail(
                operation,
                f"requested sets not in manifest: {missing}" if missing else "no sets requested",
            )
            return

        verification = await self.verifier.verify(manifest.manifest_id, deep=True)
        if not verification.verified:
            await self._fail(
                operation,
                f"manifest failed verification: {'; '.join(verification.report.issues)}",
            )
            return

        try:
            envelope = self._load_payload(manifest)
            plan = await self._plan(envelope, targets, operation.point_in_time)
        except BackupError as e:
            await self._fail(operation, e.message)
            return

        result.planned = {
            name: {"records": len(records), "discarded": discarded}
            for name, (records, discarded) in plan.items()
        }

        if operation.dry_run:
            operation.outcome = RestoreOutcome.COMMITTED
            logger.info(
                f"Dry run {operation.operation_id} complete",
                extra={"operation_id": operation.operation_id, "planned": result.planned},
            )
            await self._audit_operation("restore_dry_run", operation, {"planned": result.planned})
            return

        try:
            async with self.lock.exclusive(operation.operation_id):
                safety = await self._take_safety_snapshot(manifest, operation)
                if safety is None:
                    return
                self.pins.pin(safety.manifest_id)
                try:
                    await self._defer_cancellation(
                        self._apply(operation, result, plan, targets, safety)
                    )
                finally:
                    self.pins.unpin(safety.manifest_id)
        except LockContention as e:
            operation.outcome = RestoreOutcome.FAILED
            operation.error = e.message
            logger.warning(
                f"Restore {operation.operation_id} rejected: {e.message}",
                extra={"operation_id": operation.operation_id, "holder": e.holder},
            )
            raise

    def _load_payload(self, manifest: Manifest) -> PayloadEnvelope:
        data = self.arena.get(manifest.payload_ref)
        if digest(data) != manifest.payload_ref:
            raise VerificationFailed(
                f"Payload of {manifest.manifest_id} changed after verification",
                manifest_id=manifest.manifest_id,
            )
        return decode_payload(data)

    async def _plan(
        self,
        envelope: PayloadEnvelope,
        targets: list[str],
        point_in_time: datetime | None,
    ) -> dict[str, tuple[list[Record], int]]:
        plan: dict[str, tuple[list[Record], int]] = {}
        for name in targets:
            # Cancellation point between sets
            await asyncio.sleep(0)
            records = envelope.entity_sets[name]
            if point_in_time is None:
                plan[name] = (records, 0)
                continue

            kept: list[Record] = []
            for record in records:
                try:
                    stamp = record_timestamp(record, self.entity_sets.timestamp_fields)
                except ValueError as e:
                    raise VerificationFailed(
                        f"Cannot apply point-in-time to {name}: {e}",
                        manifest_id=envelope.manifest_id,
                    ) from e
                if stamp is None or stamp <= point_in_time:
                    kept.append(record)
            plan[name] = (kept, len(records) - len(kept))
        return plan

    async def _take_safety_snapshot(
        self, manifest: Manifest, operation: RestoreOperation
    ) -> Manifest | None:
        scope = sorted(set(self.entity_sets.full_sets) | set(manifest.entity_sets))
        try:
            safety = await self.coordinator.create_snapshot(
                ManifestKind.FULL,
                scope,
                self.safety_retention,
                user_id=operation.user_id,
                lock_held=True,
            )
            if not safety.is_completed or not safety.verified:
                raise SafetySnapshotFailed(
                    f"Safety snapshot {safety.manifest_id} is {safety.status.value}: {safety.error}",
                    details={"safety_manifest_id": safety.manifest_id},
                )
        except BackupError as e:
            reason = e.message if isinstance(e, SafetySnapshotFailed) else f"safety snapshot failed: {e.message}"
            await self._fail(operation, reason)
            return None
        except Exception as e:
            logger.error(
                f"Safety snapshot for {operation.operation_id} raised",
                exc_info=True,
                extra={"operation_id": operation.operation_id},
            )
            await self._fail(operation, f"safety snapshot failed: {type(e).__name__}: {e}")
            return None

        operation.safety_manifest_id = safety.manifest_id
        logger.info(
            f"Safety snapshot {safety.manifest_id} taken for {operation.operation_id}",
            extra={"operation_id": operation.operation_id, "safety_manifest_id": safety.manifest_id},
        )
        return safety

    async def _defer_cancellation(self, coro: Awaitable[T]) -> T:
        task = asyncio.ensure_future(coro)
        cancelled = False
        while True:
            try:
                value = await asyncio.shield(task)
            except asyncio.CancelledError:
                if task.cancelled():
                    raise
                cancelled = True
                continue
            break
        if cancelled:
            raise asyncio.CancelledError()
        return value

    async def _apply(
        self,
        operation: RestoreOperation,
        result: RestoreResult,
        plan: dict[str, tuple[list[Record], int]],
        targets: list[str],
        safety: Manifest,
    ) -> None:
        operation.outcome = RestoreOutcome.RESTORING
        current: str | None = None
        try:
            for name in targets:
                current = name
                records, _ = plan[name]
                await self._replace_set(name, records)
                result.restored_counts[name] = len(records)
                await self._audit_step(
                    "restore_step",
                    operation,
                    name,
                    before={
                        "count": safety.record_counts.get(name),
                        "checksum": safety.per_set_checksum.get(name),
                    },
                    after={"count": len(records), "checksum": set_checksum(records)},
                )
        except Exception as e:
            await self._roll_back(operation, safety, targets, current, e)
            return

        operation.outcome = RestoreOutcome.COMMITTED
        logger.info(
            f"Restore {operation.operation_id} committed",
            extra={
                "operation_id": operation.operation_id,
                "manifest_id": operation.manifest_id,
                "restored_counts": result.restored_counts,
            },
        )
        await self._audit_operation(
            "restore",
            operation,
            {"restoredCounts": result.restored_counts, "planned": result.planned},
        )

    async def _roll_back(
        self,
        operation: RestoreOperation,
        safety: Manifest,
        targets: list[str],
        failed_set: str | None,
        error: Exception,
    ) -> None:
        operation.outcome = RestoreOutcome.ROLLING_BACK
        operation.error = f"restore of {failed_set} failed: {error}"
        logger.error(
            f"Restore {operation.operation_id} failed at {failed_set}, rolling back",
            exc_info=error,
            extra={"operation_id": operation.operation_id, "safety_manifest_id": safety.manifest_id},
        )

        try:
            await self._recover(operation, safety, targets)
        except Exception as recovery_error:
            operation.outcome = RestoreOutcome.FAILED
            details = {
                "operation_id": operation.operation_id,
                "manifest_id": operation.manifest_id,
                "safety_manifest_id": safety.manifest_id,
                "original_error": str(error),
                "recovery_error": str(recovery_error),
            }
            await self.alert.alert(
                f"Rollback of restore {operation.operation_id} failed; "
                f"entity store may be inconsistent (safety manifest {safety.manifest_id})",
                details,
            )
            await self._audit_operation("rollback_failed", operation, details)
            raise RollbackFailed(
                f"Rollback failed after restore error: {recovery_error}",
                manifest_id=operation.manifest_id,
                safety_manifest_id=safety.manifest_id,
                original_error=str(error),
            ) from recovery_error

        operation.outcome = RestoreOutcome.ROLLED_BACK
        await self._audit_operation(
            "restore_rolled_back", operation, {"failedSet": failed_set, "error": str(error)}
        )
        raise RestoreStepFailed(
            f"Restore of {failed_set} failed and was rolled back: {error}",
            manifest_id=operation.manifest_id,
            entity_set=failed_set,
            safety_manifest_id=safety.manifest_id,
        ) from error

    async def _recover(
        self, operation: RestoreOperation, safety: Manifest, targets: list[str]
    ) -> None:
        envelope = self._load_payload(safety)
        for name in targets:
            records = envelope.entity_sets.get(name)
            if records is None:
                raise TransactionError(f"Safety snapshot {safety.manifest_id} lacks {name}")
            expected = safety.per_set_checksum.get(name)
            if set_checksum(records) != expected:
                raise VerificationFailed(
                    f"Safety snapshot copy of {name} does not match its checksum",
                    manifest_id=safety.manifest_id,
                )

            await self._replace_set(name, records)
            actual = set_checksum(await self._read_set(name))
            await self._audit_step(
                "rollback_step",
                operation,
                name,
                before=None,
                after={"count": len(records), "checksum": actual},
            )
            if actual != expected:
                raise TransactionError(
                    f"{name} does not match the safety snapshot after recovery",
                    details={"entity_set": name, "expected": expected, "actual": actual},
                )

    async def _replace_set(self, name: str, records: list[Record]) -> None:
        txn = await self.store.begin_transaction(IsolationLevel.SERIALIZABLE)
        try:
            await txn.replace_all(name, records)
            await txn.commit()
        except BaseException:
            await txn.abort()
            raise

    async def _read_set(self, name: str) -> list[Record]:
        txn = await self.store.begin_transaction(IsolationLevel.SNAPSHOT)
        try:
            return await txn.read_all(name)
        finally:
            await txn.abort()

    async def _fail(self, operation: RestoreOperation, reason: str) -> None:
        operation.outcome = RestoreOutcome.FAILED
        operation.error = reason
        logger.error(
            f"Restore {operation.operation_id} failed: {reason}",
            extra={"operation_id": operation.operation_id, "manifest_id": operation.manifest_id},
        )
        await self._audit_operation("restore_failed", operation, {"error": reason})

    async def _audit_step(
        self,
        action: str,
        operation: RestoreOperation,
        entity_set: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        await record_safely(
            self.audit,
            AuditEntry(
                action=action,
                user_id=operation.user_id,
                before={"entitySet": entity_set, **before} if before is not None else None,
                after={
                    "entitySet": entity_set,
                    "operationId": operation.operation_id,
                    "manifestId": operation.manifest_id,
                    **(after or {}),
                },
            ),
        )

    async def _audit_operation(
        self, action: str, operation: RestoreOperation, extra: dict[str, Any]
    ) -> None:
        await record_safely(
            self.audit,
            AuditEntry(
                action=action,
                user_id=operation.user_id,
                after={
                    "operationId": operation.operation_id,
                    "manifestId": operation.manifest_id,
                    "safetyManifestId": operation.safety_manifest_id,
                    "sets": operation.requested_sets or "all",
                    "pointInTime": to_iso(operation.point_in_time),
                    "dryRun": operation.dry_run,
                    "outcome": operation.outcome.value,
                    **extra,
                },
            ),
        )
