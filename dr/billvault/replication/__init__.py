"""
Replication module for BillVault.

Supported transports:
- HTTP (httpx client talking to the aiohttp replica receiver)
- S3 (aiobotocore)
- In-memory (for testing)
"""

from .base import ReplicaAck, ReplicaCopy, ReplicaTransport, create_replica_transport
from .manager import ReplicationManager
from .memory import InMemoryReplicaTransport

__all__ = [
    "ReplicaAck",
    "ReplicaCopy",
    "ReplicaTransport",
    "create_replica_transport",
    "ReplicationManager",
    "InMemoryReplicaTransport",
]
