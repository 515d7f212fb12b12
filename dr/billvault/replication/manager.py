"""
Replication manager for BillVault.

Propagates completed manifests and their payloads to a static set of replica
nodes and tracks node health:
- replicate(): schedules one background push per active node and returns
- Each push retries with exponential backoff, each attempt time-bounded
- last_sync_at only moves on an acknowledgement whose payload reference
  matches the manifest
- The health loop marks nodes inactive once their last sync is older than the
  staleness threshold, and catches inactive nodes up with the most recent
  completed manifest; the following health check marks them active again

Invariants:
    - Node status is only changed by check_health()
    - Replication failures are logged, never raised to the snapshot caller
    - The node set is fixed at construction

How to change safely:
    - Keep push bookkeeping in one place (_push_with_retry)
    - Transports must not touch node state
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from ..catalog.arena import PayloadArena
from ..catalog.index import ManifestIndex
from ..config import ReplicationConfig
from ..errors import BackupError, ReplicationError
from ..integrity.checksum import digest
from ..models import Manifest, NodeStatus, ReplicaNode, utcnow
from .base import ReplicaTransport

logger = logging.getLogger(__name__)


class ReplicationManager:
    """Pushes manifests to replica nodes and tracks their health.

    Example:
        >>> manager = ReplicationManager(nodes, transport, arena, index)
        >>> manager.replicate(manifest)  # returns immediately
        >>> await manager.drain()
        >>> manager.replication_health()
        1.0
    """

    def __init__(
        self,
        nodes: list[ReplicaNode],
        transport: ReplicaTransport,
        arena: PayloadArena,
        index: ManifestIndex,
        staleness_threshold_seconds: float = 600,
        max_retries: int = 3,
        retry_base_ms: int = 200,
        timeout_seconds: float = 30.0,
        health_check_interval_seconds: float = 300,
    ) -> None:
        """Initialize the replication manager.

        Args:
            nodes: Replica nodes (fixed for the lifetime of the manager)
            transport: Transport used to reach the nodes
            arena: Payload arena to read payloads from
            index: Manifest index (for catch-up pushes)
            staleness_threshold_seconds: Node becomes inactive past this age
            max_retries: Retries after the first failed attempt
            retry_base_ms: Base delay of the exponential backoff
            timeout_seconds: Timeout of one push attempt
            health_check_interval_seconds: Interval of the health loop
        """
        self._nodes = {node.node_id: node for node in nodes}
        self.transport = transport
        self.arena = arena
        self.index = index
        self.staleness_threshold = timedelta(seconds=staleness_threshold_seconds)
        self.max_retries = max_retries
        self.retry_base_ms = retry_base_ms
        self.timeout_seconds = timeout_seconds
        self.health_check_interval_seconds = health_check_interval_seconds

        self._tasks: set[asyncio.Task] = set()
        self._running = False
        self._pushes_acked = 0
        self._pushes_failed = 0

    @classmethod
    def from_config(
        cls,
        config: ReplicationConfig,
        transport: ReplicaTransport,
        arena: PayloadArena,
        index: ManifestIndex,
    ) -> ReplicationManager:
        now = utcnow()
        nodes = [
            ReplicaNode(node_id=node_id, address=address, registered_at=now)
            for node_id, address in config.nodes
        ]
        return cls(
            nodes,
            transport,
            arena,
            index,
            staleness_threshold_seconds=config.staleness_threshold_seconds,
            max_retries=config.max_retries,
            retry_base_ms=config.retry_base_ms,
            timeout_seconds=config.timeout_seconds,
            health_check_interval_seconds=config.health_check_interval_seconds,
        )

    @property
    def nodes(self) -> list[ReplicaNode]:
        return list(self._nodes.values())

    def get_node(self, node_id: str) -> ReplicaNode | None:
        return self._nodes.get(node_id)

    def replicate(self, manifest: Manifest) -> None:
        """Schedule pushes of a manifest to every active node. Never blocks."""
        if not manifest.is_completed or manifest.payload_ref is None:
            logger.warning(f"Not replicating incomplete manifest {manifest.manifest_id}")
            return

        for node in self._nodes.values():
            if node.status != NodeStatus.ACTIVE:
                continue
            self._spawn(self._push_with_retry(node, manifest))

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _push_with_retry(self, node: ReplicaNode, manifest: Manifest) -> bool:
        try:
            payload = self.arena.get(manifest.payload_ref)
        except BackupError as e:
            node.last_error = e.message
            self._pushes_failed += 1
            logger.error(
                f"Cannot replicate {manifest.manifest_id}: {e.message}",
                extra={"manifest_id": manifest.manifest_id, "node_id": node.node_id},
            )
            return False

        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                ack = await asyncio.wait_for(
                    self.transport.push(node, manifest, payload),
                    timeout=self.timeout_seconds,
                )
                if ack.manifest_id != manifest.manifest_id or ack.payload_ref != manifest.payload_ref:
                    raise ReplicationError(
                        f"Node {node.node_id} acknowledged {ack.payload_ref}, "
                        f"expected {manifest.payload_ref}",
                        node_id=node.node_id,
                    )
            except Exception as e:
                expected = isinstance(e, (ReplicationError, asyncio.TimeoutError))
                if isinstance(e, asyncio.TimeoutError):
                    reason = str(e) or f"push timed out after {self.timeout_seconds}s"
                elif expected:
                    reason = str(e)
                else:
                    reason = f"{type(e).__name__}: {e}"
                node.consecutive_failures += 1
                node.last_error = reason
                logger.warning(
                    f"Replication attempt {attempt + 1}/{attempts} to {node.node_id} failed: {reason}",
                    exc_info=not expected,
                    extra={"manifest_id": manifest.manifest_id, "node_id": node.node_id},
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(self.retry_base_ms / 1000.0 * (2**attempt))
                continue

            node.last_sync_at = utcnow()
            node.consecutive_failures = 0
            node.last_error = None
            self._pushes_acked += 1
            logger.info(
                f"Replicated {manifest.manifest_id} to {node.node_id}",
                extra={"manifest_id": manifest.manifest_id, "node_id": node.node_id},
            )
            return True

        self._pushes_failed += 1
        logger.error(
            f"Replication of {manifest.manifest_id} to {node.node_id} failed "
            f"after {attempts} attempts: {node.last_error}",
            extra={"manifest_id": manifest.manifest_id, "node_id": node.node_id},
        )
        return False

    async def check_health(self, now: datetime | None = None) -> dict[str, Any]:
        """Recompute node status and catch up inactive nodes.

        Args:
            now: Evaluation time (defaults to the current time)

        Returns:
            Health summary
        """
        now = now or utcnow()
        for node in self._nodes.values():
            status = (
                NodeStatus.INACTIVE
                if node.staleness(now) > self.staleness_threshold
                else NodeStatus.ACTIVE
            )
            if status != node.status:
                log = logger.warning if status == NodeStatus.INACTIVE else logger.info
                log(
                    f"Replica node {node.node_id} is now {status.value}",
                    extra={"node_id": node.node_id, "last_sync_at": node.last_sync_at},
                )
            node.status = status

        inactive = [node for node in self._nodes.values() if node.status == NodeStatus.INACTIVE]
        caught_up: list[str] = []
        if inactive:
            latest = await self.index.latest_completed()
            if latest is not None and latest.payload_ref is not None:
                results = await asyncio.gather(
                    *(self._push_with_retry(node, latest) for node in inactive)
                )
                caught_up = [node.node_id for node, ok in zip(inactive, results) if ok]

        return {
            "nodes": [node.to_dict() for node in self._nodes.values()],
            "replication_health": self.replication_health(),
            "caught_up": caught_up,
        }

    def replication_health(self) -> float:
        """Fraction of active nodes (1.0 when no nodes are configured)."""
        if not self._nodes:
            return 1.0
        active = sum(1 for node in self._nodes.values() if node.status == NodeStatus.ACTIVE)
        return active / len(self._nodes)

    async def fetch_verified_copy(self, manifest: Manifest) -> bytes | None:
        """Find a replica copy of a manifest's payload whose bytes hash to its reference."""
        if manifest.payload_ref is None:
            return None
        ordered = sorted(self._nodes.values(), key=lambda node: node.status != NodeStatus.ACTIVE)
        for node in ordered:
            try:
                copy = await asyncio.wait_for(
                    self.transport.fetch(node, manifest.manifest_id),
                    timeout=self.timeout_seconds,
                )
            except (ReplicationError, asyncio.TimeoutError) as e:
                logger.warning(f"Could not fetch {manifest.manifest_id} from {node.node_id}: {e}")
                continue
            if copy is None:
                continue
            if digest(copy.payload) != manifest.payload_ref:
                logger.warning(
                    f"Replica copy of {manifest.manifest_id} on {node.node_id} does not match",
                    extra={"manifest_id": manifest.manifest_id, "node_id": node.node_id},
                )
                continue
            return copy.payload
        return None

    async def drain(self) -> None:
        """Wait for all in-flight pushes to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def start(self) -> None:
        """Run the health check loop until stopped."""
        if self._running:
            logger.warning("Replication health loop already running")
            return

        self._running = True
        logger.info(
            "Starting replication health loop",
            extra={
                "nodes": list(self._nodes),
                "interval_seconds": self.health_check_interval_seconds,
            },
        )
        try:
            while self._running:
                await asyncio.sleep(self.health_check_interval_seconds)
                if not self._running:
                    break
                try:
                    await self.check_health()
                except Exception as e:
                    logger.error(f"Replication health check error: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Replication health loop cancelled")
        finally:
            self._running = False

    async def stop(self, drain_timeout: float = 10.0) -> None:
        """Stop the health loop, finish or cancel in-flight pushes, close the transport."""
        self._running = False
        logger.info("Stopping replication manager")
        try:
            await asyncio.wait_for(self.drain(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.transport.close()

    @property
    def stats(self) -> dict[str, Any]:
        """Get replication statistics."""
        return {
            "nodes": len(self._nodes),
            "replication_health": self.replication_health(),
            "pushes_acked": self._pushes_acked,
            "pushes_failed": self._pushes_failed,
            "in_flight": len(self._tasks),
        }
