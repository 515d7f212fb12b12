"""
SQLite entity store adapter.

Stores each entity set in its own table of JSON records inside one SQLite
file, so a single transaction spans every set. Used for single-node
deployments, the CLI and integration tests.

Isolation mapping:
    SNAPSHOT      -> BEGIN DEFERRED + an immediate read, which pins the read
                     snapshot in WAL mode
    SERIALIZABLE  -> BEGIN IMMEDIATE (writers are excluded until commit)

Invariants:
    - One SQLite file holds every entity set
    - Set names are sanitized before becoming table names
    - All sqlite3 errors surface as TransactionError

Table schema:
    entity_sets:
        - name TEXT PRIMARY KEY
    set_<name>:
        - seq INTEGER PRIMARY KEY
        - record_json TEXT
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from ..errors import TransactionError
from .base import IsolationLevel, Record

logger = logging.getLogger(__name__)


def _table_name(set_name: str) -> str:
    safe_name = "".join(c for c in set_name if c.isalnum() or c == "_")
    if not safe_name or safe_name != set_name:
        raise TransactionError(f"Invalid entity set name: {set_name!r}")
    return f"set_{safe_name}"


class SQLiteTransaction:
    """Transaction over one SQLite connection."""

    def __init__(self, conn: sqlite3.Connection, isolation: IsolationLevel) -> None:
        self._conn = conn
        self.isolation = isolation
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise TransactionError("Transaction already closed")

    def _set_exists(self, set_name: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM entity_sets WHERE name = ?", (set_name,)
        ).fetchone()
        return row is not None

    async def read_all(self, set_name: str) -> list[Record]:
        self._check_open()
        table = _table_name(set_name)
        try:
            if not self._set_exists(set_name):
                raise TransactionError(
                    f"Unknown entity set: {set_name}", details={"entity_set": set_name}
                )
            rows = self._conn.execute(f"SELECT record_json FROM {table} ORDER BY seq").fetchall()
        except sqlite3.Error as e:
            raise TransactionError(f"Failed to read {set_name}: {e}") from e
        return [json.loads(row[0]) for row in rows]

    async def replace_all(self, set_name: str, records: list[Record]) -> None:
        self._check_open()
        table = _table_name(set_name)
        try:
            self._conn.execute(
                f"CREATE TABLE IF NOT EXISTS {table} ("
                "seq INTEGER PRIMARY KEY, record_json TEXT NOT NULL)"
            )
            self._conn.execute("INSERT OR IGNORE INTO entity_sets (name) VALUES (?)", (set_name,))
            self._conn.execute(f"DELETE FROM {table}")
            self._conn.executemany(
                f"INSERT INTO {table} (record_json) VALUES (?)",
                [(json.dumps(record),) for record in records],
            )
        except (TypeError, ValueError) as e:
            raise TransactionError(f"Records of {set_name} are not serializable: {e}") from e
        except sqlite3.Error as e:
            raise TransactionError(f"Failed to replace {set_name}: {e}") from e

    async def commit(self) -> None:
        self._check_open()
        try:
            self._conn.execute("COMMIT")
        except sqlite3.Error as e:
            await self.abort()
            raise TransactionError(f"Commit failed: {e}") from e
        self._close()

    async def abort(self) -> None:
        if self._closed:
            return
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning(f"Rollback failed: {e}")
        finally:
            self._close()

    def _close(self) -> None:
        self._closed = True
        self._conn.close()


class SQLiteEntityStore:
    """Entity store adapter backed by one SQLite file.

    Example:
        >>> store = SQLiteEntityStore("/var/lib/billing/entities.db")
        >>> await store.initialize()
        >>> txn = await store.begin_transaction(IsolationLevel.SERIALIZABLE)
        >>> await txn.replace_all("bills", [{"_id": "b1", "amount": 10}])
        >>> await txn.commit()
    """

    def __init__(
        self,
        db_path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode (snapshot reads alongside writers)
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # explicit transactions only
        )
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        if self.wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = FULL")
        return conn

    async def initialize(self, entity_sets: tuple[str, ...] | list[str] = ()) -> None:
        """Create the set registry table and an empty table per configured set."""
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise TransactionError(f"Entity store unavailable: {e}") from e
        try:
            conn.execute("CREATE TABLE IF NOT EXISTS entity_sets (name TEXT PRIMARY KEY)")
            for set_name in entity_sets:
                conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {_table_name(set_name)} ("
                    "seq INTEGER PRIMARY KEY, record_json TEXT NOT NULL)"
                )
                conn.execute("INSERT OR IGNORE INTO entity_sets (name) VALUES (?)", (set_name,))
        except sqlite3.Error as e:
            raise TransactionError(f"Failed to initialize entity store: {e}") from e
        finally:
            conn.close()
        logger.info(f"Entity store ready: {self.db_path}", extra={"entity_sets": list(entity_sets)})

    async def begin_transaction(self, isolation: IsolationLevel) -> SQLiteTransaction:
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise TransactionError(f"Entity store unavailable: {e}") from e

        try:
            if isolation == IsolationLevel.SERIALIZABLE:
                conn.execute("BEGIN IMMEDIATE")
            else:
                conn.execute("BEGIN DEFERRED")
            # First read pins the snapshot for the rest of the transaction
            conn.execute("SELECT COUNT(*) FROM entity_sets").fetchone()
        except sqlite3.Error as e:
            conn.close()
            raise TransactionError(f"Failed to begin {isolation.value} transaction: {e}") from e

        return SQLiteTransaction(conn, isolation)

    async def list_entity_sets(self) -> list[str]:
        """Names of every entity set in the store."""
        conn = self._connect()
        try:
            rows = conn.execute("SELECT name FROM entity_sets ORDER BY name").fetchall()
        except sqlite3.Error as e:
            raise TransactionError(f"Failed to list entity sets: {e}") from e
        finally:
            conn.close()
        return [row[0] for row in rows]
