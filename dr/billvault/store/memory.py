"""
In-memory entity store implementation for testing.

This module provides a simple in-memory store for:
- Unit tests
- Integration tests
- Local development without a database

Transactions read from a private copy taken at begin time and apply their
writes atomically on commit, with optimistic conflict detection for
SERIALIZABLE transactions.

Invariants:
    - All data is lost on process exit
    - Reads inside a transaction never observe later commits
    - Injected failures fire once, then clear

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the EntityStore protocol
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Dict, List, Optional, Set

from ..errors import TransactionError
from .base import IsolationLevel, Record

logger = logging.getLogger(__name__)


class InMemoryTransaction:
    """Transaction over an InMemoryEntityStore."""

    def __init__(
        self,
        store: "InMemoryEntityStore",
        isolation: IsolationLevel,
        snapshot: Dict[str, List[Record]],
        versions: Dict[str, int],
    ) -> None:
        self._store = store
        self.isolation = isolation
        self._snapshot = snapshot
        self._versions = versions
        self._writes: Dict[str, List[Record]] = {}
        self._read: Set[str] = set()
        self._closed = False

    async def read_all(self, set_name: str) -> List[Record]:
        if self._closed:
            raise TransactionError("Transaction already closed")
        # Yield so concurrent writers can interleave between set reads
        await asyncio.sleep(0)
        self._store._maybe_fail("read", set_name)
        if set_name in self._writes:
            return copy.deepcopy(self._writes[set_name])
        if set_name not in self._snapshot:
            raise TransactionError(
                f"Unknown entity set: {set_name}", details={"entity_set": set_name}
            )
        self._read.add(set_name)
        return copy.deepcopy(self._snapshot[set_name])

    async def replace_all(self, set_name: str, records: List[Record]) -> None:
        if self._closed:
            raise TransactionError("Transaction already closed")
        await asyncio.sleep(0)
        self._store._maybe_fail("replace", set_name)
        self._writes[set_name] = copy.deepcopy(records)

    async def commit(self) -> None:
        if self._closed:
            raise TransactionError("Transaction already closed")
        self._closed = True
        self._store._maybe_fail("commit", None)
        self._store._apply(self)

    async def abort(self) -> None:
        self._closed = True


class InMemoryEntityStore:
    """In-memory implementation of EntityStore for testing.

    Example:
        >>> store = InMemoryEntityStore({"users": [{"_id": "u1"}]})
        >>> txn = await store.begin_transaction(IsolationLevel.SNAPSHOT)
        >>> await txn.read_all("users")
        [{'_id': 'u1'}]
    """

    def __init__(self, initial: Optional[Dict[str, List[Record]]] = None) -> None:
        self._sets: Dict[str, List[Record]] = copy.deepcopy(initial or {})
        self._versions: Dict[str, int] = {name: 0 for name in self._sets}
        self._failures: Dict[tuple, Exception] = {}
        self._available = True
        self.commit_count = 0

    async def begin_transaction(self, isolation: IsolationLevel) -> InMemoryTransaction:
        if not self._available:
            raise TransactionError("Entity store unavailable")
        return InMemoryTransaction(
            self,
            isolation,
            snapshot=copy.deepcopy(self._sets),
            versions=dict(self._versions),
        )

    def _apply(self, txn: InMemoryTransaction) -> None:
        if txn.isolation == IsolationLevel.SERIALIZABLE:
            touched = txn._read | set(txn._writes)
            for name in touched:
                if self._versions.get(name, 0) != txn._versions.get(name, 0):
                    raise TransactionError(
                        f"Serialization conflict on {name}", details={"entity_set": name}
                    )
        for name, records in txn._writes.items():
            self._sets[name] = records
            self._versions[name] = self._versions.get(name, 0) + 1
        self.commit_count += 1

    def _maybe_fail(self, operation: str, set_name: Optional[str]) -> None:
        error = self._failures.pop((operation, set_name), None)
        if error is None:
            error = self._failures.pop((operation, None), None)
        if error is not None:
            logger.debug(f"Injected failure: {operation} {set_name}")
            raise error

    # Testing helpers

    def inject_failure(
        self,
        operation: str,
        set_name: Optional[str] = None,
        error: Optional[Exception] = None,
    ) -> None:
        """Make the next matching operation raise.

        Args:
            operation: "read", "replace" or "commit"
            set_name: Only fail for this set (None matches any set)
            error: Exception to raise (TransactionError by default)
        """
        self._failures[(operation, set_name)] = error or TransactionError(
            f"Injected {operation} failure", details={"entity_set": set_name}
        )

    def set_available(self, available: bool) -> None:
        """Simulate the store going down or coming back."""
        self._available = available

    def get_records(self, set_name: str) -> List[Record]:
        """Committed records of a set (testing helper)."""
        return copy.deepcopy(self._sets.get(set_name, []))

    def put_records(self, set_name: str, records: List[Record]) -> None:
        """Overwrite a set outside any transaction (testing helper)."""
        self._sets[set_name] = copy.deepcopy(records)
        self._versions[set_name] = self._versions.get(set_name, 0) + 1

    def set_names(self) -> List[str]:
        return sorted(self._sets)
