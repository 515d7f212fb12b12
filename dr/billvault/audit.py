"""
Audit trail and operator alerts for BillVault.

Every manifest creation, failed backup, restore commit/rollback and purge is
recorded as an AuditEntry through an AuditSink. Entries follow the billing
platform's audit log shape: the backup system is the audited entity
(entity_type "settings", entity_id "backup_system") unless a more specific
entity applies.

Sinks:
- LoggingAuditSink: structured log line per entry
- JsonlAuditSink: append-only JSON lines file (production default)
- InMemoryAuditSink: for tests

Invariants:
    - Audit writes never raise into destructive paths; sink failures are logged
    - Entries are JSON-serializable

How to change safely:
    - Add new actions freely; never rename existing ones, downstream
      reports filter on them
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .models import to_iso, utcnow

logger = logging.getLogger(__name__)

BACKUP_ENTITY_TYPE = "settings"
BACKUP_ENTITY_ID = "backup_system"


@dataclass
class AuditEntry:
    """One audit trail entry."""

    action: str
    entity_type: str = BACKUP_ENTITY_TYPE
    entity_id: str = BACKUP_ENTITY_ID
    user_id: str = "system"
    user_name: str = "Backup System"
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    timestamp: str = field(default_factory=lambda: to_iso(utcnow()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "before": self.before,
            "after": self.after,
            "timestamp": self.timestamp,
        }


@runtime_checkable
class AuditSink(Protocol):
    """Destination for audit entries."""

    @abstractmethod
    async def record(self, entry: AuditEntry) -> None:
        """Persist one entry."""
        ...


class LoggingAuditSink:
    """Writes audit entries to the log."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._logger = log or logging.getLogger("dr.billvault.audit.trail")

    async def record(self, entry: AuditEntry) -> None:
        self._logger.info(f"audit: {entry.action}", extra={"audit": entry.to_dict()})


class JsonlAuditSink:
    """Appends audit entries to a JSON lines file.

    Example:
        >>> sink = JsonlAuditSink("/var/lib/billvault/audit.jsonl")
        >>> await sink.record(AuditEntry(action="create"))
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def record(self, entry: AuditEntry) -> None:
        line = json.dumps(entry.to_dict(), sort_keys=True, default=str)
        async with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read_entries(self) -> list[dict[str, Any]]:
        """Read back all entries (oldest first)."""
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


class InMemoryAuditSink:
    """Keeps audit entries in memory. For tests."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def actions(self) -> list[str]:
        return [entry.action for entry in self.entries]

    def by_action(self, action: str) -> list[AuditEntry]:
        return [entry for entry in self.entries if entry.action == action]


async def record_safely(sink: AuditSink, entry: AuditEntry) -> None:
    """Record an entry, logging instead of raising if the sink fails."""
    try:
        await sink.record(entry)
    except Exception as e:
        logger.error(
            f"Failed to write audit entry {entry.action}: {e}",
            exc_info=True,
            extra={"audit": entry.to_dict()},
        )


@runtime_checkable
class OperatorAlert(Protocol):
    """Operator-visible alert channel."""

    @abstractmethod
    async def alert(self, message: str, details: dict[str, Any]) -> None:
        ...


class LoggingOperatorAlert:
    """Raises alerts as CRITICAL log records."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._logger = log or logging.getLogger("dr.billvault.alerts")

    async def alert(self, message: str, details: dict[str, Any]) -> None:
        self._logger.critical(message, extra={"alert": details})


class InMemoryOperatorAlert:
    """Collects alerts in memory. For tests."""

    def __init__(self) -> None:
        self.alerts: list[tuple[str, dict[str, Any]]] = []

    async def alert(self, message: str, details: dict[str, Any]) -> None:
        self.alerts.append((message, details))
