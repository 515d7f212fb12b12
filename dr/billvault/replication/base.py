"""
Base protocol and types for replica transports.

A replica transport moves a manifest and its payload to one remote replica
node and reads them back for repair. Replication bookkeeping (retries,
health, staleness) lives in the ReplicationManager, not in transports.

Invariants:
    - push() returns a ReplicaAck only after the replica durably stored the payload
    - The ack echoes the payload reference the replica computed from the bytes
    - fetch() returns None when the replica does not hold the manifest

How to change safely:
    - Protocol changes require updating all implementations
    - Transports raise ReplicationError for every remote failure
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from ..models import Manifest, ReplicaNode

if TYPE_CHECKING:
    from ..config import ReplicationConfig

MANIFEST_HEADER = "X-BillVault-Manifest"


@dataclass(frozen=True)
class ReplicaAck:
    """Acknowledgement of a stored replica.

    Attributes:
        node_id: Acknowledging node
        manifest_id: Stored manifest
        payload_ref: Content hash of the bytes the replica stored
        acknowledged_at: When the replica stored them
    """

    node_id: str
    manifest_id: str
    payload_ref: str
    acknowledged_at: datetime


@dataclass
class ReplicaCopy:
    """A manifest and payload read back from a replica."""

    manifest: Manifest
    payload: bytes


@runtime_checkable
class ReplicaTransport(Protocol):
    """Protocol for replica transports.

    Example:
        >>> ack = await transport.push(node, manifest, payload)
        >>> copy = await transport.fetch(node, manifest.manifest_id)
    """

    @abstractmethod
    async def push(self, node: ReplicaNode, manifest: Manifest, payload: bytes) -> ReplicaAck:
        """Store a manifest and its payload on a node.

        Raises:
            ReplicationError: If the node is unreachable or rejects the push
        """
        ...

    @abstractmethod
    async def fetch(self, node: ReplicaNode, manifest_id: str) -> ReplicaCopy | None:
        """Read a manifest and its payload back from a node.

        Raises:
            ReplicationError: If the node is unreachable
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release transport resources."""
        ...


def create_replica_transport(config: ReplicationConfig) -> ReplicaTransport:
    """Factory function to create the configured transport.

    Args:
        config: Replication configuration

    Returns:
        ReplicaTransport implementation
    """
    from ..config import ReplicaBackend

    if config.backend == ReplicaBackend.HTTP:
        from .http import HttpReplicaTransport

        return HttpReplicaTransport(timeout_seconds=config.timeout_seconds)
    if config.backend == ReplicaBackend.S3:
        from .s3 import S3ReplicaTransport

        return S3ReplicaTransport(config.s3)
    raise ValueError(f"Unknown replica backend: {config.backend}")
