"""
SQLite manifest index for BillVault.

The index is the metadata half of the arena + index catalog: one row per
manifest, keyed by manifest id, pointing at its payload by content hash.
Deleting the row is the commit point of a purge.

Invariants:
    - One row per manifest id
    - A completed manifest row is never rewritten, except its verified flag
    - All writes are single-statement or explicit transactions

How to change safely:
    - Add columns with defaults; body_json carries the full manifest so new
      fields do not need new columns unless they are filtered on
    - Keep timestamps as ISO-8601 UTC strings so they sort lexically

Table schema:
    manifests:
        - manifest_id TEXT PRIMARY KEY
        - created_at TEXT (ISO-8601 UTC)
        - kind TEXT
        - status TEXT
        - retention_until TEXT (ISO-8601 UTC)
        - verified INTEGER
        - payload_ref TEXT
        - size_bytes INTEGER
        - body_json TEXT (Manifest.to_dict())
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import ManifestImmutableError, ManifestNotFoundError
from ..models import Manifest, ManifestKind, ManifestStatus, to_iso

logger = logging.getLogger(__name__)


@dataclass
class ManifestStats:
    """Aggregate statistics over all manifests in the index."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    total_size: int = 0
    average_size: float = 0.0
    oldest: datetime | None = None
    newest: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "total_size": self.total_size,
            "average_size": self.average_size,
            "oldest": to_iso(self.oldest),
            "newest": to_iso(self.newest),
        }


class ManifestIndex:
    """Manifest metadata store backed by a single SQLite file.

    Example:
        >>> index = ManifestIndex("/var/lib/billvault")
        >>> await index.initialize()
        >>> await index.save(manifest)
        >>> manifest = await index.get("backup_...")
    """

    def __init__(self, data_dir: str | Path, busy_timeout_ms: int = 5000) -> None:
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / "manifests.db"
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA synchronous = FULL")
            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create the index schema if it does not exist."""
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS manifests (
                    manifest_id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    retention_until TEXT NOT NULL,
                    verified INTEGER NOT NULL DEFAULT 0,
                    payload_ref TEXT,
                    size_bytes INTEGER NOT NULL DEFAULT 0,
                    body_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_manifests_created ON manifests(created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_manifests_kind_status ON manifests(kind, status);
                CREATE INDEX IF NOT EXISTS idx_manifests_retention ON manifests(retention_until);
                CREATE INDEX IF NOT EXISTS idx_manifests_payload ON manifests(payload_ref);
            """)
        logger.info(f"Manifest index ready: {self.db_path}")

    async def save(self, manifest: Manifest) -> None:
        """Insert or update a manifest row.

        Raises:
            ManifestImmutableError: If the stored row is already completed
        """
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT status FROM manifests WHERE manifest_id = ?",
                        (manifest.manifest_id,),
                    ).fetchone()
                    if row is not None and row["status"] == ManifestStatus.COMPLETED.value:
                        raise ManifestImmutableError(
                            f"Manifest {manifest.manifest_id} is completed and cannot be rewritten",
                            details={"manifest_id": manifest.manifest_id},
                        )
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO manifests (manifest_id, created_at, kind, status,
                            retention_until, verified, payload_ref, size_bytes, body_json)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            manifest.manifest_id,
                            to_iso(manifest.created_at),
                            manifest.kind.value,
                            manifest.status.value,
                            to_iso(manifest.retention_until),
                            int(manifest.verified),
                            manifest.payload_ref,
                            manifest.size_bytes,
                            json.dumps(manifest.to_dict()),
                        ),
                    )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

    async def update_verified(self, manifest_id: str, verified: bool) -> None:
        """Set the verified flag, the only mutable field of a completed manifest.

        Raises:
            ManifestNotFoundError: If the manifest does not exist
        """
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT body_json FROM manifests WHERE manifest_id = ?",
                        (manifest_id,),
                    ).fetchone()
                    if row is None:
                        raise ManifestNotFoundError(manifest_id)
                    body = json.loads(row["body_json"])
                    body["verified"] = verified
                    conn.execute(
                        "UPDATE manifests SET verified = ?, body_json = ? WHERE manifest_id = ?",
                        (int(verified), json.dumps(body), manifest_id),
                    )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

    async def get(self, manifest_id: str) -> Manifest | None:
        """Get a manifest by id."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT body_json FROM manifests WHERE manifest_id = ?",
                (manifest_id,),
            ).fetchone()
        if row is None:
            return None
        return Manifest.from_dict(json.loads(row["body_json"]))

    async def require(self, manifest_id: str) -> Manifest:
        """Get a manifest by id.

        Raises:
            ManifestNotFoundError: If it does not exist
        """
        manifest = await self.get(manifest_id)
        if manifest is None:
            raise ManifestNotFoundError(manifest_id)
        return manifest

    async def list_manifests(
        self,
        kind: ManifestKind | None = None,
        status: ManifestStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[Manifest]:
        """List manifests newest first.

        Args:
            kind: Only manifests of this kind
            status: Only manifests with this status
            start: Only manifests created at or after this time
            end: Only manifests created at or before this time
            limit: Maximum number of manifests
        """
        clauses: list[str] = []
        params: list[Any] = []
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(to_iso(start))
        if end is not None:
            clauses.append("created_at <= ?")
            params.append(to_iso(end))

        sql = "SELECT body_json FROM manifests"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, manifest_id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Manifest.from_dict(json.loads(row["body_json"])) for row in rows]

    async def expired(self, now: datetime) -> list[Manifest]:
        """Manifests whose retention_until is strictly before now."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT body_json FROM manifests WHERE retention_until < ? ORDER BY retention_until",
                (to_iso(now),),
            ).fetchall()
        return [Manifest.from_dict(json.loads(row["body_json"])) for row in rows]

    async def latest_completed(self) -> Manifest | None:
        """Most recent completed manifest."""
        manifests = await self.list_manifests(status=ManifestStatus.COMPLETED, limit=1)
        return manifests[0] if manifests else None

    async def count_payload_refs(self, payload_ref: str, exclude: str | None = None) -> int:
        """Number of manifests pointing at a payload (optionally excluding one)."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM manifests WHERE payload_ref = ? AND manifest_id != ?",
                (payload_ref, exclude or ""),
            ).fetchone()
        return row["n"]

    async def delete(self, manifest_id: str) -> bool:
        """Delete a manifest row. Returns False if it did not exist."""
        async with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "DELETE FROM manifests WHERE manifest_id = ?",
                    (manifest_id,),
                )
                return cursor.rowcount > 0

    async def stats(self) -> ManifestStats:
        """Aggregate statistics over all manifests."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS successful,
                       SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                       COALESCE(SUM(size_bytes), 0) AS total_size,
                       MIN(created_at) AS oldest,
                       MAX(created_at) AS newest
                FROM manifests
                """
            ).fetchone()

        total = row["total"] or 0
        total_size = row["total_size"] or 0
        return ManifestStats(
            total=total,
            successful=row["successful"] or 0,
            failed=row["failed"] or 0,
            total_size=total_size,
            average_size=total_size / total if total else 0.0,
            oldest=datetime.fromisoformat(row["oldest"]) if row["oldest"] else None,
            newest=datetime.fromisoformat(row["newest"]) if row["newest"] else None,
        )
