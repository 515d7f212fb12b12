"""
Core data types for BillVault.

Defines the records passed between the snapshot coordinator, integrity
verifier, replication manager, retention manager and restore orchestrator:
- Manifest: metadata + checksums describing one backup snapshot
- ReplicaNode: bookkeeping for one replica target
- RestoreOperation: state of one restore, owned by the orchestrator
- CorruptionReport / VerificationResult / RestoreResult: operation results

External representation (to_dict) uses ISO-8601 timestamps and lowercase
enum strings.

Invariants:
    - Manifest.master_checksum depends only on per_set_checksum (sorted by name)
    - A completed Manifest is immutable except for ``verified``
    - ReplicaNode.status is only recomputed by the health check
    - A non-dry-run RestoreOperation in RESTORING has a safety_manifest_id

How to change safely:
    - Add new manifest fields with defaults; from_dict must accept old rows
    - Never change enum values, they are persisted in the index
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_timestamp(value: Any) -> datetime:
    """Parse a record timestamp.

    Accepts ISO-8601 strings, datetimes and epoch milliseconds (the billing
    platform stores JavaScript Date values).

    Raises:
        ValueError: If the value is not a recognizable timestamp
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Timestamp out of range: {value!r}") from e
    if isinstance(value, str):
        return parse_iso(value)
    raise ValueError(f"Not a timestamp: {value!r}")


def record_timestamp(record: dict[str, Any], fields: tuple[str, ...]) -> datetime | None:
    """First parseable timestamp among fields, or None if the record has none.

    Raises:
        ValueError: If a present field holds an unparseable value
    """
    for name in fields:
        value = record.get(name)
        if value is not None:
            return parse_timestamp(value)
    return None


class ManifestKind(Enum):
    """Snapshot kind."""

    FULL = "full"
    INCREMENTAL = "incremental"


class ManifestStatus(Enum):
    """Manifest lifecycle status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class NodeStatus(Enum):
    """Replica node health."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class RestoreOutcome(Enum):
    """Restore state machine states."""

    PENDING = "pending"
    VERIFYING = "verifying"
    RESTORING = "restoring"
    ROLLING_BACK = "rolling_back"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RestoreOutcome.COMMITTED, RestoreOutcome.ROLLED_BACK, RestoreOutcome.FAILED)


@dataclass(frozen=True)
class RetentionPolicy:
    """How long a manifest is kept.

    Attributes:
        days: Retention in days (must be at least 1)
    """

    days: int

    def retention_until(self, created_at: datetime) -> datetime:
        return created_at + timedelta(days=self.days)

    @property
    def is_valid(self) -> bool:
        return self.days >= 1


@dataclass
class Manifest:
    """Metadata and checksum record describing one backup snapshot.

    Attributes:
        manifest_id: Unique manifest identifier
        created_at: Snapshot creation time (UTC)
        kind: Full or incremental
        entity_sets: Names of the entity sets captured (sorted)
        per_set_checksum: Digest of each set's canonical serialization
        master_checksum: Digest combining the per-set digests in sorted order
        size_bytes: Stored payload size
        retention_until: Time after which the manifest may be purged
        verified: Result of the most recent verification
        status: Lifecycle status
        payload_ref: Content hash of the stored payload in the arena
        record_counts: Number of records per entity set
        created_by: Acting user id
        error: Failure reason for failed manifests
    """

    manifest_id: str
    created_at: datetime
    kind: ManifestKind
    entity_sets: list[str]
    retention_until: datetime
    status: ManifestStatus = ManifestStatus.PENDING
    per_set_checksum: dict[str, str] = field(default_factory=dict)
    master_checksum: str | None = None
    size_bytes: int = 0
    verified: bool = False
    payload_ref: str | None = None
    record_counts: dict[str, int] = field(default_factory=dict)
    created_by: str = "system"
    error: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == ManifestStatus.COMPLETED

    def is_expired(self, now: datetime) -> bool:
        return self.retention_until < now

    def to_dict(self) -> dict[str, Any]:
        """Convert to the external dictionary representation."""
        return {
            "id": self.manifest_id,
            "created_at": to_iso(self.created_at),
            "kind": self.kind.value,
            "entity_sets": list(self.entity_sets),
            "per_set_checksum": dict(self.per_set_checksum),
            "master_checksum": self.master_checksum,
            "size_bytes": self.size_bytes,
            "retention_until": to_iso(self.retention_until),
            "verified": self.verified,
            "status": self.status.value,
            "payload_ref": self.payload_ref,
            "record_counts": dict(self.record_counts),
            "created_by": self.created_by,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        """Create from the external dictionary representation."""
        return cls(
            manifest_id=data["id"],
            created_at=parse_iso(data["created_at"]),
            kind=ManifestKind(data["kind"]),
            entity_sets=list(data.get("entity_sets", [])),
            per_set_checksum=dict(data.get("per_set_checksum", {})),
            master_checksum=data.get("master_checksum"),
            size_bytes=data.get("size_bytes", 0),
            retention_until=parse_iso(data["retention_until"]),
            verified=data.get("verified", False),
            status=ManifestStatus(data.get("status", "pending")),
            payload_ref=data.get("payload_ref"),
            record_counts=dict(data.get("record_counts", {})),
            created_by=data.get("created_by", "system"),
            error=data.get("error"),
        )


@dataclass
class ReplicaNode:
    """A replica target configured at process start.

    Attributes:
        node_id: Node identifier
        address: Transport address (URL or s3://bucket/prefix)
        status: Derived health status
        last_sync_at: Time of the last acknowledged push
        registered_at: Time the node was loaded from configuration
        consecutive_failures: Failed pushes since the last acknowledgement
        last_error: Most recent push error
    """

    node_id: str
    address: str
    status: NodeStatus = NodeStatus.ACTIVE
    last_sync_at: datetime | None = None
    registered_at: datetime = field(default_factory=utcnow)
    consecutive_failures: int = 0
    last_error: str | None = None

    def staleness(self, now: datetime) -> timedelta:
        """Time since the last acknowledged push (or since registration)."""
        return now - (self.last_sync_at or self.registered_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.node_id,
            "address": self.address,
            "status": self.status.value,
            "last_sync_at": to_iso(self.last_sync_at),
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }


@dataclass
class RestoreOperation:
    """State of one restore, owned by the restore orchestrator.

    Attributes:
        operation_id: Unique operation identifier
        manifest_id: Manifest being restored
        requested_sets: Entity set names, or None for all sets in the manifest
        point_in_time: Discard records newer than this time
        dry_run: Stop after verification
        outcome: Current state machine state
        safety_manifest_id: Safety snapshot taken before destructive writes
        user_id: Acting user
        error: Failure reason
    """

    operation_id: str
    manifest_id: str
    requested_sets: list[str] | None = None
    point_in_time: datetime | None = None
    dry_run: bool = False
    outcome: RestoreOutcome = RestoreOutcome.PENDING
    safety_manifest_id: str | None = None
    user_id: str = "system"
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "manifest_id": self.manifest_id,
            "requested_sets": "all" if self.requested_sets is None else list(self.requested_sets),
            "point_in_time": to_iso(self.point_in_time),
            "dry_run": self.dry_run,
            "outcome": self.outcome.value,
            "safety_manifest_id": self.safety_manifest_id,
            "user_id": self.user_id,
            "error": self.error,
        }


@dataclass
class CorruptionReport:
    """Issues found in a manifest and the ones repaired."""

    manifest_id: str
    issues: list[str] = field(default_factory=list)
    repaired: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest_id": self.manifest_id,
            "issues": list(self.issues),
            "repaired": list(self.repaired),
        }


@dataclass
class VerificationResult:
    """Result of verifying a manifest.

    Attributes:
        manifest_id: Verified manifest
        verified: True only if every checksum matches
        report: Issues found and repaired (always present)
        deep: Whether deep structural checks were run
        repair_attempted: Whether a repair was tried
        repair_succeeded: Whether the repaired payload re-verified
        duration_ms: Verification duration
    """

    manifest_id: str
    verified: bool
    report: CorruptionReport
    deep: bool = False
    repair_attempted: bool = False
    repair_succeeded: bool = False
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest_id": self.manifest_id,
            "verified": self.verified,
            "report": self.report.to_dict(),
            "deep": self.deep,
            "repair_attempted": self.repair_attempted,
            "repair_succeeded": self.repair_succeeded,
            "duration_ms": self.duration_ms,
        }


@dataclass
class RestoreResult:
    """Result of a restore operation.

    Attributes:
        operation: Final restore operation state
        planned: Per-set plan (records to write, records discarded by point-in-time)
        restored_counts: Records written per set (empty for dry runs)
        duration_ms: Total restore duration
    """

    operation: RestoreOperation
    planned: dict[str, dict[str, int]] = field(default_factory=dict)
    restored_counts: dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.operation.outcome == RestoreOutcome.COMMITTED

    @property
    def error(self) -> str | None:
        return self.operation.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "operation": self.operation.to_dict(),
            "planned": {name: dict(plan) for name, plan in self.planned.items()},
            "restored_counts": dict(self.restored_counts),
            "duration_ms": self.duration_ms,
        }
