"""
Unit tests for ReplicationManager with the in-memory transport.

Tests cover:
- Fire-and-forget pushes to active nodes
- Retries with backoff, mismatched acknowledgements, timeouts
- Staleness-based health and catch-up of inactive nodes
- Verified copy lookup for repair
- Shutdown drain
"""

from datetime import timedelta

import pytest

from dr.billvault.catalog.arena import PayloadArena
from dr.billvault.catalog.index import ManifestIndex
from dr.billvault.catalog.payload import encode_payload
from dr.billvault.integrity.checksum import master_checksum, set_checksum
from dr.billvault.models import (
    Manifest,
    ManifestKind,
    ManifestStatus,
    NodeStatus,
    ReplicaNode,
    to_iso,
    utcnow,
)
from dr.billvault.replication.manager import ReplicationManager
from dr.billvault.replication.memory import InMemoryReplicaTransport


async def store_manifest(index, arena, manifest_id="backup_1", bills=None):
    bills = bills if bills is not None else [{"_id": "b1", "amount": 10}]
    created_at = utcnow()
    payload = encode_payload(manifest_id, to_iso(created_at), "full", {"bills": bills})
    per_set = {"bills": set_checksum(bills)}
    manifest = Manifest(
        manifest_id=manifest_id,
        created_at=created_at,
        kind=ManifestKind.FULL,
        entity_sets=["bills"],
        retention_until=created_at + timedelta(days=90),
        status=ManifestStatus.COMPLETED,
        per_set_checksum=per_set,
        master_checksum=master_checksum(per_set),
        size_bytes=len(payload),
        verified=True,
        payload_ref=arena.put(payload),
        record_counts={"bills": len(bills)},
    )
    await index.save(manifest)
    return manifest


class BrokenReplicaTransport(InMemoryReplicaTransport):
    """Raises a non-replication error for one node."""

    def __init__(self, broken_node_id):
        super().__init__()
        self.broken_node_id = broken_node_id

    async def push(self, node, manifest, payload):
        if node.node_id == self.broken_node_id:
            self.push_attempts[node.node_id] += 1
            raise RuntimeError("connection pool exhausted")
        return await super().push(node, manifest, payload)


class TestReplicationManager:
    """Tests for ReplicationManager."""

    @pytest.fixture
    async def index(self, data_dir):
        idx = ManifestIndex(data_dir)
        await idx.initialize()
        return idx

    @pytest.fixture
    def arena(self, data_dir):
        return PayloadArena(data_dir)

    @pytest.fixture
    def nodes(self):
        return [ReplicaNode("secondary1", "memory://1"), ReplicaNode("secondary2", "memory://2")]

    @pytest.fixture
    def manager(self, nodes, transport, arena, index):
        return ReplicationManager(
            nodes, transport, arena, index,
            staleness_threshold_seconds=600, max_retries=2, retry_base_ms=1, timeout_seconds=1.0,
        )

    @pytest.mark.asyncio
    async def test_replicate_to_all_nodes(self, manager, transport, arena, index):
        manifest = await store_manifest(index, arena)

        manager.replicate(manifest)
        await manager.drain()

        for node_id in ("secondary1", "secondary2"):
            assert transport.stored[node_id]["backup_1"].payload == arena.get(manifest.payload_ref)
            node = manager.get_node(node_id)
            assert node.last_sync_at is not None
            assert node.consecutive_failures == 0
        assert manager.stats["pushes_acked"] == 2

    @pytest.mark.asyncio
    async def test_incomplete_manifest_not_replicated(self, manager, transport, arena, index):
        manifest = await store_manifest(index, arena)
        manifest.status = ManifestStatus.FAILED

        manager.replicate(manifest)
        await manager.drain()
        assert transport.push_attempts == {}

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, manager, transport, arena, index):
        manifest = await store_manifest(index, arena)
        transport.fail_node("secondary1", times=2)

        manager.replicate(manifest)
        await manager.drain()

        assert transport.push_attempts["secondary1"] == 3
        assert "backup_1" in transport.stored["secondary1"]
        assert manager.get_node("secondary1").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, manager, transport, arena, index):
        manifest = await store_manifest(index, arena)
        transport.fail_node("secondary1")

        manager.replicate(manifest)
        await manager.drain()

        node = manager.get_node("secondary1")
        assert transport.push_attempts["secondary1"] == 3
        assert node.last_sync_at is None
        assert node.consecutive_failures == 3
        assert "unreachable" in node.last_error
        # Other nodes are unaffected
        assert manager.get_node("secondary2").last_sync_at is not None

    @pytest.mark.asyncio
    async def test_mismatched_ack_is_a_failure(self, manager, transport, arena, index):
        manifest = await store_manifest(index, arena)
        transport.corrupt_acks("secondary1")

        manager.replicate(manifest)
        await manager.drain()

        node = manager.get_node("secondary1")
        assert node.last_sync_at is None
        assert "acknowledged" in node.last_error

    @pytest.mark.asyncio
    async def test_unexpected_transport_error_is_a_failed_attempt(self, nodes, arena, index):
        transport = BrokenReplicaTransport("secondary1")
        manager = ReplicationManager(
            nodes, transport, arena, index, max_retries=1, retry_base_ms=1, timeout_seconds=1.0
        )
        manifest = await store_manifest(index, arena)

        manager.replicate(manifest)
        await manager.drain()

        node = manager.get_node("secondary1")
        assert transport.push_attempts["secondary1"] == 2
        assert node.last_sync_at is None
        assert node.consecutive_failures == 2
        assert node.last_error == "RuntimeError: connection pool exhausted"
        assert manager.stats["pushes_failed"] == 1
        assert manager.stats["pushes_acked"] == 1
        assert manager.stats["in_flight"] == 0
        assert "backup_1" in transport.stored["secondary2"]

    @pytest.mark.asyncio
    async def test_push_timeout(self, nodes, transport, arena, index):
        manager = ReplicationManager(
            nodes[:1], transport, arena, index, max_retries=0, retry_base_ms=1, timeout_seconds=0.05
        )
        manifest = await store_manifest(index, arena)
        transport.delay_node("secondary1", 1.0)

        manager.replicate(manifest)
        await manager.drain()

        node = manager.get_node("secondary1")
        assert node.last_sync_at is None
        assert "timed out" in node.last_error

    @pytest.mark.asyncio
    async def test_health_marks_stale_nodes_inactive(self, manager, transport, arena, index):
        manifest = await store_manifest(index, arena)
        manager.replicate(manifest)
        await manager.drain()
        transport.fail_node("secondary2")

        later = utcnow() + timedelta(seconds=601)
        health = await manager.check_health(now=later)

        assert manager.get_node("secondary1").status == NodeStatus.INACTIVE
        assert manager.get_node("secondary2").status == NodeStatus.INACTIVE
        # secondary1 was caught up with the latest manifest, secondary2 still fails
        assert health["caught_up"] == ["secondary1"]
        assert health["replication_health"] == 0.0

        health = await manager.check_health()
        assert manager.get_node("secondary1").status == NodeStatus.ACTIVE
        assert manager.get_node("secondary2").status == NodeStatus.ACTIVE
        assert health["replication_health"] == 1.0

    @pytest.mark.asyncio
    async def test_inactive_node_skipped_by_replicate(self, manager, transport, arena, index):
        manager.get_node("secondary2").status = NodeStatus.INACTIVE
        manifest = await store_manifest(index, arena)

        manager.replicate(manifest)
        await manager.drain()

        assert "secondary2" not in transport.push_attempts
        assert manager.replication_health() == 0.5

    @pytest.mark.asyncio
    async def test_health_without_nodes(self, transport, arena, index):
        manager = ReplicationManager([], transport, arena, index)
        assert manager.replication_health() == 1.0
        assert (await manager.check_health())["nodes"] == []

    @pytest.mark.asyncio
    async def test_fetch_verified_copy(self, manager, transport, arena, index):
        manifest = await store_manifest(index, arena)
        good = arena.get(manifest.payload_ref)
        transport.put_copy("secondary1", manifest, b"tampered")
        transport.put_copy("secondary2", manifest, good)

        assert await manager.fetch_verified_copy(manifest) == good

    @pytest.mark.asyncio
    async def test_fetch_verified_copy_skips_unreachable(self, manager, transport, arena, index):
        manifest = await store_manifest(index, arena)
        transport.fail_node("secondary1")
        transport.fail_node("secondary2")

        assert await manager.fetch_verified_copy(manifest) is None

    @pytest.mark.asyncio
    async def test_stop_drains_and_closes(self, manager, transport, arena, index):
        manifest = await store_manifest(index, arena)
        manager.replicate(manifest)

        await manager.stop()

        assert transport.closed is True
        assert "backup_1" in transport.stored["secondary1"]
        assert manager.stats["in_flight"] == 0
