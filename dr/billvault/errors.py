"""
Error types for BillVault.

This module defines every exception raised by the backup subsystem:
- BackupError: Base exception
- ChecksumError: Unreadable or malformed payload
- TransactionError: Entity store unavailable or isolation violated
- VerificationFailed: Checksum or structural mismatch
- SafetySnapshotFailed: Safety snapshot could not be taken (restore aborted)
- RestoreStepFailed: A destructive restore step failed (rollback triggered)
- RollbackFailed: Recovery restore failed (store may be inconsistent)
- LockContention: Another restore already holds the store

Invariants:
    - All errors inherit from BackupError
    - Errors carry a stable code for programmatic handling
    - RollbackFailed is never swallowed; it is alerted and re-raised

How to change safely:
    - Add new error types as subclasses, never rename codes
    - Keep details JSON-serializable, they end up in the audit trail
"""

from __future__ import annotations

from typing import Any


class BackupError(Exception):
    """Base exception for all BillVault errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code = "BACKUP_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or type(self).code
        self.details = details or {}


class ChecksumError(BackupError):
    """Input could not be read or serialized for digesting."""

    code = "CHECKSUM_ERROR"


class TransactionError(BackupError):
    """Entity store unavailable, transaction failed, or isolation violated."""

    code = "TRANSACTION_ERROR"


class VerificationFailed(BackupError):
    """Manifest failed checksum or structural verification."""

    code = "VERIFICATION_FAILED"

    def __init__(
        self,
        message: str,
        manifest_id: str | None = None,
        issues: list[str] | None = None,
    ) -> None:
        super().__init__(message, details={"manifest_id": manifest_id, "issues": issues or []})
        self.manifest_id = manifest_id
        self.issues = issues or []


class SafetySnapshotFailed(BackupError):
    """Safety snapshot before a destructive restore could not be taken."""

    code = "SAFETY_SNAPSHOT_FAILED"


class RestoreStepFailed(BackupError):
    """A destructive restore step failed; the store was rolled back.

    The original exception is available as ``__cause__``.
    """

    code = "RESTORE_STEP_FAILED"

    def __init__(
        self,
        message: str,
        manifest_id: str | None = None,
        entity_set: str | None = None,
        safety_manifest_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details={
                "manifest_id": manifest_id,
                "entity_set": entity_set,
                "safety_manifest_id": safety_manifest_id,
            },
        )
        self.manifest_id = manifest_id
        self.entity_set = entity_set
        self.safety_manifest_id = safety_manifest_id


class RollbackFailed(BackupError):
    """Recovery restore failed. The store may be left inconsistent.

    Raised after the operator alert has fired.
    """

    code = "ROLLBACK_FAILED"

    def __init__(
        self,
        message: str,
        manifest_id: str | None = None,
        safety_manifest_id: str | None = None,
        original_error: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details={
                "manifest_id": manifest_id,
                "safety_manifest_id": safety_manifest_id,
                "original_error": original_error,
            },
        )
        self.manifest_id = manifest_id
        self.safety_manifest_id = safety_manifest_id
        self.original_error = original_error


class LockContention(BackupError):
    """Another restore already holds the entity store."""

    code = "LOCK_CONTENTION"

    def __init__(self, message: str, holder: str | None = None) -> None:
        super().__init__(message, details={"holder": holder})
        self.holder = holder


class ManifestNotFoundError(BackupError):
    """No manifest with the given id exists in the index."""

    code = "MANIFEST_NOT_FOUND"

    def __init__(self, manifest_id: str) -> None:
        super().__init__(f"Manifest not found: {manifest_id}", details={"manifest_id": manifest_id})
        self.manifest_id = manifest_id


class ManifestImmutableError(BackupError):
    """Attempt to rewrite a completed manifest."""

    code = "MANIFEST_IMMUTABLE"


class PayloadNotFoundError(BackupError):
    """Payload referenced by a manifest is missing from the arena."""

    code = "PAYLOAD_NOT_FOUND"


class SnapshotRequestError(BackupError):
    """Snapshot request violates a precondition (no manifest is created)."""

    code = "SNAPSHOT_REQUEST_INVALID"


class ReplicationError(BackupError):
    """Push to or fetch from a replica node failed."""

    code = "REPLICATION_ERROR"

    def __init__(self, message: str, node_id: str | None = None) -> None:
        super().__init__(message, details={"node_id": node_id})
        self.node_id = node_id
