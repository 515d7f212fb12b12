"""
BillVault - backup, integrity and disaster recovery for the billing platform.

This package protects the billing platform's entity sets (users, bills,
commodities, audit logs, settings) with:
- Consistent multi-set snapshots described by checksummed manifests
- Content-addressed payload storage (arena) with a SQLite manifest index
- Asynchronous replication to replica nodes (HTTP or S3)
- Retention-driven purge of expired manifests
- Verified restores with automatic rollback to a safety snapshot

Architecture:
    ┌──────────────┐   snapshot txn   ┌────────────────────┐
    │ Entity Store │─────────────────▶│ SnapshotCoordinator│
    └──────▲───────┘                  └─────────┬──────────┘
           │ per-set txns                       │ manifest + payload
    ┌──────┴──────────────┐           ┌─────────▼──────────┐
    │ RestoreOrchestrator │◀──verify──│ Arena + Index      │
    └─────────────────────┘           └──┬──────────────┬──┘
                                         │              │
                               ┌─────────▼───┐   ┌──────▼─────────┐
                               │ Replication │   │ Retention      │
                               └─────────────┘   └────────────────┘

Invariants:
    - A completed manifest is immutable except for its verified flag
    - No destructive restore write happens without a safety snapshot
    - Only one restore holds the entity store at a time
"""

from ._version import __version__

__all__ = ["__version__"]
