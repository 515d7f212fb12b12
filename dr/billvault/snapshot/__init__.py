"""
Snapshot module for BillVault.

The SnapshotCoordinator captures consistent multi-set snapshots into
manifests; the BackupScheduler runs them on a timer.
"""

from .coordinator import SnapshotCoordinator
from .scheduler import BackupScheduler

__all__ = ["SnapshotCoordinator", "BackupScheduler"]
