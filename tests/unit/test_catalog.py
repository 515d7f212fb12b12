"""
Unit tests for the payload arena, payload envelope and manifest index.

Tests cover:
- Content-addressed storage and deduplication
- Payload encode/decode and unreadable payloads
- Manifest persistence, immutability and listing filters
- Aggregate statistics
"""

import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from dr.billvault.catalog.arena import PayloadArena
from dr.billvault.catalog.index import ManifestIndex
from dr.billvault.catalog.payload import decode_payload, encode_payload
from dr.billvault.errors import (
    ChecksumError,
    ManifestImmutableError,
    ManifestNotFoundError,
    PayloadNotFoundError,
)
from dr.billvault.integrity.checksum import digest
from dr.billvault.models import Manifest, ManifestKind, ManifestStatus

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


def make_manifest(manifest_id, created_at=T0, kind=ManifestKind.FULL, status=ManifestStatus.COMPLETED,
                  payload_ref=None, size_bytes=10, retention_days=90):
    return Manifest(
        manifest_id=manifest_id,
        created_at=created_at,
        kind=kind,
        entity_sets=["bills"],
        retention_until=created_at + timedelta(days=retention_days),
        status=status,
        payload_ref=payload_ref,
        size_bytes=size_bytes,
    )


class TestPayloadArena:
    """Tests for PayloadArena."""

    @pytest.fixture
    def arena(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield PayloadArena(tmpdir)

    def test_put_get(self, arena):
        ref = arena.put(b"payload")
        assert ref == digest(b"payload")
        assert arena.get(ref) == b"payload"
        assert arena.exists(ref)
        assert arena.size(ref) == 7

    def test_put_is_idempotent(self, arena):
        assert arena.put(b"same") == arena.put(b"same")

    def test_get_missing(self, arena):
        with pytest.raises(PayloadNotFoundError):
            arena.get(digest(b"never stored"))

    def test_invalid_reference(self, arena):
        with pytest.raises(ChecksumError):
            arena.path_for("../../etc/passwd")

    def test_delete(self, arena):
        ref = arena.put(b"doomed")
        assert arena.delete(ref) is True
        assert not arena.exists(ref)
        assert arena.delete(ref) is False

    def test_restore_payload_requires_matching_bytes(self, arena):
        ref = arena.put(b"original")
        arena.path_for(ref).write_bytes(b"corrupted")

        with pytest.raises(ChecksumError):
            arena.restore_payload(ref, b"something else")

        arena.restore_payload(ref, b"original")
        assert arena.get(ref) == b"original"


class TestPayloadEnvelope:
    """Tests for encode_payload / decode_payload."""

    def test_roundtrip(self):
        sets = {"bills": [{"_id": "b2"}, {"_id": "b1"}], "users": []}
        envelope = decode_payload(encode_payload("backup_1", "2026-03-01T00:00:00+00:00", "full", sets))

        assert envelope.manifest_id == "backup_1"
        assert envelope.kind == "full"
        assert envelope.record_counts() == {"bills": 2, "users": 0}
        assert [r["_id"] for r in envelope.entity_sets["bills"]] == ["b1", "b2"]

    def test_deterministic(self):
        sets_a = {"bills": [{"_id": "b1"}, {"_id": "b2"}]}
        sets_b = {"bills": [{"_id": "b2"}, {"_id": "b1"}]}
        assert encode_payload("m", "t", "full", sets_a) == encode_payload("m", "t", "full", sets_b)

    def test_not_gzip(self):
        with pytest.raises(ChecksumError):
            decode_payload(b"plain bytes")

    def test_truncated(self):
        data = encode_payload("m", "t", "full", {"bills": [{"_id": "b1"}]})
        with pytest.raises(ChecksumError):
            decode_payload(data[: len(data) // 2])


class TestManifestIndex:
    """Tests for ManifestIndex."""

    @pytest.fixture
    async def index(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            idx = ManifestIndex(tmpdir)
            await idx.initialize()
            yield idx

    @pytest.mark.asyncio
    async def test_save_and_get(self, index):
        manifest = make_manifest("backup_1", payload_ref=digest(b"x"))
        manifest.per_set_checksum = {"bills": digest(b"b")}
        await index.save(manifest)

        fetched = await index.get("backup_1")
        assert fetched is not None
        assert fetched.created_at == T0
        assert fetched.per_set_checksum == {"bills": digest(b"b")}
        assert fetched.status == ManifestStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_get_missing(self, index):
        assert await index.get("nope") is None
        with pytest.raises(ManifestNotFoundError):
            await index.require("nope")

    @pytest.mark.asyncio
    async def test_completed_manifest_is_immutable(self, index):
        manifest = make_manifest("backup_1")
        await index.save(manifest)

        manifest.size_bytes = 999
        with pytest.raises(ManifestImmutableError):
            await index.save(manifest)
        assert (await index.get("backup_1")).size_bytes == 10

    @pytest.mark.asyncio
    async def test_in_progress_manifest_can_be_updated(self, index):
        manifest = make_manifest("backup_1", status=ManifestStatus.IN_PROGRESS)
        await index.save(manifest)
        manifest.status = ManifestStatus.COMPLETED
        await index.save(manifest)
        assert (await index.get("backup_1")).is_completed

    @pytest.mark.asyncio
    async def test_update_verified(self, index):
        await index.save(make_manifest("backup_1"))
        await index.update_verified("backup_1", True)
        assert (await index.get("backup_1")).verified is True

        with pytest.raises(ManifestNotFoundError):
            await index.update_verified("nope", True)

    @pytest.mark.asyncio
    async def test_list_newest_first_with_filters(self, index):
        await index.save(make_manifest("backup_a", created_at=T0))
        await index.save(make_manifest("backup_b", created_at=T0 + timedelta(days=1),
                                       kind=ManifestKind.INCREMENTAL))
        await index.save(make_manifest("backup_c", created_at=T0 + timedelta(days=2),
                                       status=ManifestStatus.FAILED))

        assert [m.manifest_id for m in await index.list_manifests()] == [
            "backup_c", "backup_b", "backup_a",
        ]
        assert [m.manifest_id for m in await index.list_manifests(kind=ManifestKind.INCREMENTAL)] == [
            "backup_b"
        ]
        assert [m.manifest_id for m in await index.list_manifests(status=ManifestStatus.FAILED)] == [
            "backup_c"
        ]
        ranged = await index.list_manifests(start=T0 + timedelta(hours=1), end=T0 + timedelta(days=1))
        assert [m.manifest_id for m in ranged] == ["backup_b"]
        assert len(await index.list_manifests(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_expired_is_strict(self, index):
        await index.save(make_manifest("backup_1", retention_days=1))
        boundary = T0 + timedelta(days=1)

        assert await index.expired(boundary) == []
        assert [m.manifest_id for m in await index.expired(boundary + timedelta(seconds=1))] == [
            "backup_1"
        ]

    @pytest.mark.asyncio
    async def test_count_payload_refs(self, index):
        ref = digest(b"shared")
        await index.save(make_manifest("backup_1", payload_ref=ref))
        await index.save(make_manifest("backup_2", payload_ref=ref))

        assert await index.count_payload_refs(ref) == 2
        assert await index.count_payload_refs(ref, exclude="backup_1") == 1

    @pytest.mark.asyncio
    async def test_delete(self, index):
        await index.save(make_manifest("backup_1"))
        assert await index.delete("backup_1") is True
        assert await index.delete("backup_1") is False

    @pytest.mark.asyncio
    async def test_stats(self, index):
        await index.save(make_manifest("backup_1", size_bytes=100))
        await index.save(make_manifest("backup_2", created_at=T0 + timedelta(days=1), size_bytes=300))
        await index.save(make_manifest("backup_3", status=ManifestStatus.FAILED, size_bytes=0))

        stats = await index.stats()
        assert stats.total == 3
        assert stats.successful == 2
        assert stats.failed == 1
        assert stats.total_size == 400
        assert stats.average_size == pytest.approx(400 / 3)
        assert stats.oldest == T0
        assert stats.newest == T0 + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_stats_empty(self, index):
        stats = await index.stats()
        assert stats.total == 0
        assert stats.average_size == 0.0
        assert stats.to_dict()["oldest"] is None
