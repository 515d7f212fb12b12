"""Retention module for BillVault: expiry-driven purge of manifests."""

from .manager import PurgeResult, RetentionManager

__all__ = ["PurgeResult", "RetentionManager"]
