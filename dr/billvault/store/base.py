"""
Entity store adapter protocol.

The transactional data store holding the billing platform's entity sets is
external to BillVault. This module defines the contract BillVault consumes:

    store.begin_transaction(isolation) -> EntityTransaction
    txn.read_all(set_name) -> records
    txn.replace_all(set_name, records)
    txn.commit() / txn.abort()

Records are JSON-compatible dictionaries.

Invariants:
    - All reads inside one SNAPSHOT/SERIALIZABLE transaction observe the same
      logical instant
    - replace_all() is only visible to others after commit()
    - abort() after commit() or abort() is a no-op

How to change safely:
    - Protocol changes require updating every implementation
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

from abc import abstractmethod
from enum import Enum
from typing import Any, Protocol, runtime_checkable

Record = dict[str, Any]


class IsolationLevel(Enum):
    """Transaction isolation levels understood by adapters."""

    SNAPSHOT = "snapshot"
    SERIALIZABLE = "serializable"


@runtime_checkable
class EntityTransaction(Protocol):
    """One transaction against the entity store."""

    @abstractmethod
    async def read_all(self, set_name: str) -> list[Record]:
        """Read every record of an entity set.

        Raises:
            TransactionError: If the set does not exist or the read fails
        """
        ...

    @abstractmethod
    async def replace_all(self, set_name: str, records: list[Record]) -> None:
        """Clear an entity set and repopulate it with records.

        Creates the set if it does not exist.

        Raises:
            TransactionError: If the write fails
        """
        ...

    @abstractmethod
    async def commit(self) -> None:
        """Commit the transaction.

        Raises:
            TransactionError: If the commit fails or isolation was violated
        """
        ...

    @abstractmethod
    async def abort(self) -> None:
        """Abort the transaction, discarding writes."""
        ...


@runtime_checkable
class EntityStore(Protocol):
    """Transactional store of named entity sets.

    Example:
        >>> txn = await store.begin_transaction(IsolationLevel.SNAPSHOT)
        >>> try:
        ...     bills = await txn.read_all("bills")
        ... finally:
        ...     await txn.abort()
    """

    @abstractmethod
    async def begin_transaction(self, isolation: IsolationLevel) -> EntityTransaction:
        """Open a transaction.

        Raises:
            TransactionError: If the store is unavailable
        """
        ...
