"""
API module for BillVault.

- replica_server: aiohttp receiver for the HTTP replica transport
"""

from .replica_server import create_replica_app, run_replica_server

__all__ = ["create_replica_app", "run_replica_server"]
