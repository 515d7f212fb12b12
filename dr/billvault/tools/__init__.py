"""
CLI tools for BillVault administration.

- cli: snapshot, list, show, verify, restore, purge and health commands

Invariants:
    - Tools work offline (no running service required)
    - All operations are recorded in the audit trail
"""

from .cli import build_parser, main, run_command

__all__ = ["build_parser", "main", "run_command"]
