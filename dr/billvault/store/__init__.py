"""
Entity store adapters for BillVault.

The transactional store holding the billing platform's entity sets is an
external collaborator. This package defines its contract and provides:
- SQLite (single-file store for local deployments and the CLI)
- In-memory (for testing)
"""

from .base import EntityStore, EntityTransaction, IsolationLevel, Record
from .memory import InMemoryEntityStore
from .sqlite import SQLiteEntityStore

__all__ = [
    "EntityStore",
    "EntityTransaction",
    "IsolationLevel",
    "Record",
    "InMemoryEntityStore",
    "SQLiteEntityStore",
]
