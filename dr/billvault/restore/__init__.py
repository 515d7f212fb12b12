"""Restore module for BillVault: verified restores with automatic rollback."""

from .orchestrator import RestoreOrchestrator

__all__ = ["RestoreOrchestrator"]
