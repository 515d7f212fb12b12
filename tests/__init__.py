"""
BillVault Test Suite.

This package contains:
- unit/: Unit tests (no external services)
- integration/: Integration tests (SQLite, in-memory store and replicas)
"""
