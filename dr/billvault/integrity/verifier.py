"""
Integrity verifier for BillVault.

Validates a stored manifest against its payload:
- Payload content hash matches the manifest's payload reference
- Every per-set checksum recomputes from the payload
- The master checksum recomputes from the per-set checksums

Deep verification additionally parses the payload envelope and samples
cross-record consistency rules (unique record ids, parseable timestamps,
configured reference rules).

Repair fetches a copy of the payload from a replica, accepts it only if its
bytes hash to the manifest's payload reference, rewrites the arena file and
re-runs full verification.

Invariants:
    - verified=True only if every checksum matches after any repair
    - A CorruptionReport is always returned, even when empty
    - Verification is time-bounded and cancellable between entity sets

How to change safely:
    - New checks must append issues, never raise
    - Keep repair behind re-verification
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import abstractmethod
from typing import Any, Protocol, runtime_checkable

from ..catalog.arena import PayloadArena
from ..catalog.index import ManifestIndex
from ..catalog.payload import FORMAT_VERSION, PayloadEnvelope, decode_payload
from ..errors import BackupError, ChecksumError, PayloadNotFoundError
from ..models import (
    CorruptionReport,
    Manifest,
    ManifestStatus,
    VerificationResult,
    record_timestamp,
)
from .checksum import digest, master_checksum, set_checksum

logger = logging.getLogger(__name__)

ID_FIELDS = ("_id", "id")


@runtime_checkable
class RepairSource(Protocol):
    """Provides verified payload copies for repair (the replication manager)."""

    @abstractmethod
    async def fetch_verified_copy(self, manifest: Manifest) -> bytes | None:
        """Bytes hashing to manifest.payload_ref, or None if no replica has them."""
        ...


def _record_id(record: dict[str, Any]) -> Any:
    for name in ID_FIELDS:
        if name in record:
            return record[name]
    return None


class IntegrityVerifier:
    """Verifies manifests against their stored payloads.

    Example:
        >>> verifier = IntegrityVerifier(index, arena)
        >>> result = await verifier.verify("backup_...", deep=True)
        >>> result.verified, result.report.issues
        (True, [])
    """

    def __init__(
        self,
        index: ManifestIndex,
        arena: PayloadArena,
        repair_source: RepairSource | None = None,
        timestamp_fields: tuple[str, ...] = ("updated_at", "created_at", "timestamp"),
        sample_size: int = 100,
        reference_rules: tuple[tuple[str, str, str], ...] = (),
        timeout_seconds: float = 120.0,
    ) -> None:
        """Initialize the verifier.

        Args:
            index: Manifest index
            arena: Payload arena
            repair_source: Source of replica copies for repair
            timestamp_fields: Record fields checked for parseable timestamps
            sample_size: Records per set sampled by deep checks
            reference_rules: (set, field, target_set) triples for deep checks
            timeout_seconds: Upper bound on one verification
        """
        self.index = index
        self.arena = arena
        self.repair_source = repair_source
        self.timestamp_fields = timestamp_fields
        self.sample_size = sample_size
        self.reference_rules = reference_rules
        self.timeout_seconds = timeout_seconds

    async def verify(
        self,
        manifest_id: str,
        deep: bool = False,
        repair: bool = False,
    ) -> VerificationResult:
        """Verify a manifest.

        Args:
            manifest_id: Manifest to verify
            deep: Run structural and cross-record checks
            repair: Try to repair corruption from a replica copy

        Returns:
            VerificationResult (never raises for corrupt or missing data)
        """
        start = time.monotonic()
        manifest = await self.index.get(manifest_id)
        if manifest is None:
            return VerificationResult(
                manifest_id=manifest_id,
                verified=False,
                report=CorruptionReport(manifest_id, issues=[f"manifest not found: {manifest_id}"]),
                deep=deep,
            )

        try:
            result = await asyncio.wait_for(
                self._verify(manifest, deep, repair), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Verification of {manifest_id} timed out after {self.timeout_seconds}s",
                extra={"manifest_id": manifest_id},
            )
            result = VerificationResult(
                manifest_id=manifest_id,
                verified=False,
                report=CorruptionReport(
                    manifest_id,
                    issues=[f"verification timed out after {self.timeout_seconds}s"],
                ),
                deep=deep,
                repair_attempted=repair,
            )
            result.duration_ms = int((time.monotonic() - start) * 1000)
            return result

        result.duration_ms = int((time.monotonic() - start) * 1000)
        if manifest.verified != result.verified and manifest.is_completed:
            await self.index.update_verified(manifest_id, result.verified)

        if result.verified:
            logger.info(
                f"Manifest {manifest_id} verified",
                extra={"manifest_id": manifest_id, "deep": deep, "duration_ms": result.duration_ms},
            )
        else:
            logger.warning(
                f"Manifest {manifest_id} failed verification: {result.report.issues}",
                extra={"manifest_id": manifest_id, "issues": result.report.issues},
            )
        return result

    async def _verify(self, manifest: Manifest, deep: bool, repair: bool) -> VerificationResult:
        report = CorruptionReport(manifest.manifest_id)
        issues = await self.check_manifest(manifest, deep=deep)
        result = VerificationResult(
            manifest_id=manifest.manifest_id,
            verified=not issues,
            report=report,
            deep=deep,
        )
        report.issues.extend(issues)
        if not issues or not repair:
            return result

        result.repair_attempted = True
        repaired = await self._repair(manifest, report)
        if not repaired:
            return result

        remaining = await self.check_manifest(manifest, deep=deep)
        if remaining:
            report.issues.extend(f"after repair: {issue}" for issue in remaining)
            report.issues.append("repair failed: repaired payload did not re-verify")
            return result

        report.repaired.extend(issues)
        report.issues.clear()
        result.verified = True
        result.repair_succeeded = True
        logger.info(
            f"Manifest {manifest.manifest_id} repaired from replica",
            extra={"manifest_id": manifest.manifest_id, "repaired": report.repaired},
        )
        return result

    async def _repair(self, manifest: Manifest, report: CorruptionReport) -> bool:
        if self.repair_source is None:
            report.issues.append("repair failed: no replica source configured")
            return False
        if manifest.payload_ref is None:
            report.issues.append("repair failed: manifest has no payload reference")
            return False

        try:
            data = await self.repair_source.fetch_verified_copy(manifest)
        except BackupError as e:
            report.issues.append(f"repair failed: {e.message}")
            return False
        if data is None:
            report.issues.append("repair failed: no replica holds a verified copy")
            return False

        try:
            self.arena.restore_payload(manifest.payload_ref, data)
        except (ChecksumError, OSError) as e:
            report.issues.append(f"repair failed: {e}")
            return False
        return True

    async def check_manifest(self, manifest: Manifest, deep: bool = False) -> list[str]:
        """Run every check against the stored payload and return the issues found."""
        issues: list[str] = []

        if manifest.status != ManifestStatus.COMPLETED:
            issues.append(f"manifest status is {manifest.status.value}, expected completed")
        if manifest.payload_ref is None:
            issues.append("manifest has no payload reference")
            return issues

        try:
            data = self.arena.get(manifest.payload_ref)
        except PayloadNotFoundError:
            issues.append(f"payload missing: {manifest.payload_ref}")
            return issues
        except ChecksumError as e:
            issues.append(f"payload unreadable: {e.message}")
            return issues

        actual_ref = digest(data)
        if actual_ref != manifest.payload_ref:
            issues.append(f"payload content hash mismatch: expected {manifest.payload_ref}, got {actual_ref}")
        if len(data) != manifest.size_bytes:
            issues.append(f"payload size mismatch: expected {manifest.size_bytes}, got {len(data)}")

        try:
            envelope = decode_payload(data)
        except ChecksumError as e:
            issues.append(f"payload undecodable: {e.message}")
            return issues

        recomputed: dict[str, str] = {}
        for name in sorted(manifest.entity_sets):
            # Cancellation point between sets
            await asyncio.sleep(0)
            records = envelope.entity_sets.get(name)
            if records is None:
                issues.append(f"entity set missing from payload: {name}")
                continue
            try:
                recomputed[name] = set_checksum(records)
            except ChecksumError as e:
                issues.append(f"entity set {name} not serializable: {e.message}")
                continue
            expected = manifest.per_set_checksum.get(name)
            if recomputed[name] != expected:
                issues.append(f"checksum mismatch for {name}: expected {expected}, got {recomputed[name]}")

        extra_sets = sorted(set(envelope.entity_sets) - set(manifest.entity_sets))
        if extra_sets:
            issues.append(f"payload holds undeclared entity sets: {extra_sets}")

        if set(manifest.per_set_checksum) != set(manifest.entity_sets):
            issues.append("per-set checksums do not cover the declared entity sets")
        if master_checksum(manifest.per_set_checksum) != manifest.master_checksum:
            issues.append("master checksum does not match per-set checksums")
        if len(recomputed) == len(manifest.entity_sets):
            if master_checksum(recomputed) != manifest.master_checksum:
                issues.append("master checksum mismatch against payload")

        if deep:
            issues.extend(await self._deep_checks(manifest, envelope))
        return issues

    async def _deep_checks(self, manifest: Manifest, envelope: PayloadEnvelope) -> list[str]:
        issues: list[str] = []
        if envelope.format_version != FORMAT_VERSION:
            issues.append(f"unsupported payload format version: {envelope.format_version}")
        if envelope.manifest_id != manifest.manifest_id:
            issues.append(f"payload belongs to manifest {envelope.manifest_id!r}")
        if envelope.kind != manifest.kind.value:
            issues.append(f"payload kind {envelope.kind!r} does not match manifest kind")

        ids_by_set: dict[str, set[Any]] = {}
        for name in sorted(manifest.entity_sets):
            await asyncio.sleep(0)
            records = envelope.entity_sets.get(name)
            if records is None:
                continue
            if not isinstance(records, list):
                issues.append(f"entity set {name} is not a list")
                continue
            if any(not isinstance(record, dict) for record in records):
                issues.append(f"entity set {name} contains non-object records")
                continue

            expected_count = manifest.record_counts.get(name)
            if expected_count is not None and expected_count != len(records):
                issues.append(f"record count mismatch for {name}: expected {expected_count}, got {len(records)}")

            ids_by_set[name] = {
                record_id
                for record_id in map(_record_id, records)
                if isinstance(record_id, (str, int))
            }
            sample = records[: self.sample_size]
            seen: set[Any] = set()
            for record in sample:
                record_id = _record_id(record)
                if record_id is None:
                    continue
                try:
                    duplicate = record_id in seen
                    seen.add(record_id)
                except TypeError:
                    issues.append(f"record in {name} has an unhashable id")
                    continue
                if duplicate:
                    issues.append(f"duplicate record id in {name}: {record_id!r}")

            for record in sample:
                try:
                    record_timestamp(record, self.timestamp_fields)
                except ValueError as e:
                    issues.append(f"unparseable timestamp in {name} record {_record_id(record)!r}: {e}")

        for set_name, field_name, target in self.reference_rules:
            if set_name not in ids_by_set or target not in ids_by_set:
                continue
            targets = ids_by_set[target]
            for record in envelope.entity_sets[set_name][: self.sample_size]:
                value = record.get(field_name)
                if isinstance(value, (str, int)) and value not in targets:
                    issues.append(
                        f"{set_name}.{field_name}={value!r} references a missing {target} record"
                    )
        return issues
