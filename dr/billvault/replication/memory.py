"""
In-memory replica transport for testing.

Stores pushed manifests and payloads per node in memory and supports
failure injection (unreachable nodes, corrupt acknowledgements, delays).

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ReplicaTransport protocol
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from ..errors import ReplicationError
from ..integrity.checksum import digest
from ..models import Manifest, ReplicaNode, utcnow
from .base import ReplicaAck, ReplicaCopy

logger = logging.getLogger(__name__)


class InMemoryReplicaTransport:
    """In-memory implementation of ReplicaTransport for testing.

    Example:
        >>> transport = InMemoryReplicaTransport()
        >>> transport.fail_node("secondary1", times=2)
        >>> ack = await transport.push(node, manifest, payload)
    """

    def __init__(self) -> None:
        self.stored: dict[str, dict[str, ReplicaCopy]] = defaultdict(dict)
        self.push_attempts: dict[str, int] = defaultdict(int)
        self._failures: dict[str, int] = {}
        self._bad_acks: set[str] = set()
        self._delays: dict[str, float] = {}
        self.closed = False

    async def push(self, node: ReplicaNode, manifest: Manifest, payload: bytes) -> ReplicaAck:
        self.push_attempts[node.node_id] += 1
        delay = self._delays.get(node.node_id)
        if delay:
            await asyncio.sleep(delay)

        remaining = self._failures.get(node.node_id, 0)
        if remaining:
            if remaining > 0:
                self._failures[node.node_id] = remaining - 1
            raise ReplicationError(f"Node {node.node_id} unreachable", node_id=node.node_id)

        self.stored[node.node_id][manifest.manifest_id] = ReplicaCopy(
            manifest=Manifest.from_dict(manifest.to_dict()),
            payload=bytes(payload),
        )
        payload_ref = digest(payload)
        if node.node_id in self._bad_acks:
            payload_ref = digest(payload + b"\x00")
        return ReplicaAck(
            node_id=node.node_id,
            manifest_id=manifest.manifest_id,
            payload_ref=payload_ref,
            acknowledged_at=utcnow(),
        )

    async def fetch(self, node: ReplicaNode, manifest_id: str) -> ReplicaCopy | None:
        if self._failures.get(node.node_id):
            raise ReplicationError(f"Node {node.node_id} unreachable", node_id=node.node_id)
        return self.stored.get(node.node_id, {}).get(manifest_id)

    async def close(self) -> None:
        self.closed = True

    # Testing helpers

    def fail_node(self, node_id: str, times: int = -1) -> None:
        """Make pushes to a node fail (times=-1 fails until healed)."""
        self._failures[node_id] = times

    def heal_node(self, node_id: str) -> None:
        self._failures.pop(node_id, None)

    def corrupt_acks(self, node_id: str) -> None:
        """Make a node acknowledge with a mismatching payload reference."""
        self._bad_acks.add(node_id)

    def delay_node(self, node_id: str, seconds: float) -> None:
        self._delays[node_id] = seconds

    def put_copy(self, node_id: str, manifest: Manifest, payload: bytes) -> None:
        """Place a copy on a node directly."""
        self.stored[node_id][manifest.manifest_id] = ReplicaCopy(manifest=manifest, payload=payload)
