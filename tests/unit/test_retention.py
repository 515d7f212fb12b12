"""
Unit tests for RetentionManager and BackupScheduler.

Tests cover:
- Expired manifests and their payloads are purged
- Shared payloads survive until their last manifest goes
- Pinned manifests are skipped
- Purge is idempotent
- Scheduled jobs create snapshots
"""

import asyncio
from datetime import timedelta

import pytest

from dr.billvault.audit import InMemoryAuditSink
from dr.billvault.catalog.arena import PayloadArena
from dr.billvault.catalog.index import ManifestIndex
from dr.billvault.config import ScheduleConfig
from dr.billvault.coordination import ManifestPins, RestoreLock
from dr.billvault.integrity.verifier import IntegrityVerifier
from dr.billvault.models import (
    Manifest,
    ManifestKind,
    ManifestStatus,
    RetentionPolicy,
    utcnow,
)
from dr.billvault.retention.manager import RetentionManager
from dr.billvault.snapshot.coordinator import SnapshotCoordinator
from dr.billvault.snapshot.scheduler import BackupScheduler

NOW = utcnow()


async def store_manifest(index, arena, manifest_id, payload, age_days, retention_days=1,
                         status=ManifestStatus.COMPLETED):
    created_at = NOW - timedelta(days=age_days)
    ref = arena.put(payload) if status == ManifestStatus.COMPLETED else None
    manifest = Manifest(
        manifest_id=manifest_id,
        created_at=created_at,
        kind=ManifestKind.FULL,
        entity_sets=["bills"],
        retention_until=created_at + timedelta(days=retention_days),
        status=status,
        payload_ref=ref,
        size_bytes=len(payload) if ref else 0,
    )
    await index.save(manifest)
    return manifest


class TestRetentionManager:
    """Tests for RetentionManager."""

    @pytest.fixture
    async def index(self, data_dir):
        idx = ManifestIndex(data_dir)
        await idx.initialize()
        return idx

    @pytest.fixture
    def arena(self, data_dir):
        return PayloadArena(data_dir)

    @pytest.fixture
    def pins(self):
        return ManifestPins()

    @pytest.fixture
    def retention(self, index, arena, pins, audit):
        return RetentionManager(index, arena, RestoreLock(), pins, audit=audit)

    @pytest.mark.asyncio
    async def test_purges_expired(self, retention, index, arena, audit):
        old = await store_manifest(index, arena, "backup_old", b"old", age_days=5)
        fresh = await store_manifest(index, arena, "backup_new", b"new", age_days=0, retention_days=90)

        result = await retention.purge_expired(NOW, user_id="admin_1")

        assert result.purged == ["backup_old"]
        assert result.payloads_deleted == 1
        assert result.bytes_freed == 3
        assert await index.get("backup_old") is None
        assert not arena.exists(old.payload_ref)
        assert arena.exists(fresh.payload_ref)

        [entry] = audit.by_action("purge")
        assert entry.user_id == "admin_1"
        assert entry.before["manifestId"] == "backup_old"

    @pytest.mark.asyncio
    async def test_purge_is_idempotent(self, retention, index, arena):
        await store_manifest(index, arena, "backup_old", b"old", age_days=5)

        first = await retention.purge_expired(NOW)
        second = await retention.purge_expired(NOW)

        assert first.purged == ["backup_old"]
        assert second.purged == []
        assert second.payloads_deleted == 0

    @pytest.mark.asyncio
    async def test_shared_payload_kept_while_referenced(self, retention, index, arena):
        shared = await store_manifest(index, arena, "backup_old", b"same", age_days=5)
        await store_manifest(index, arena, "backup_new", b"same", age_days=0, retention_days=90)

        result = await retention.purge_expired(NOW)

        assert result.purged == ["backup_old"]
        assert result.payloads_deleted == 0
        assert arena.exists(shared.payload_ref)

    @pytest.mark.asyncio
    async def test_failed_manifests_are_purged(self, retention, index, arena):
        await store_manifest(index, arena, "backup_failed", b"", age_days=5, status=ManifestStatus.FAILED)
        result = await retention.purge_expired(NOW)
        assert result.purged == ["backup_failed"]

    @pytest.mark.asyncio
    async def test_pinned_manifest_skipped(self, retention, index, arena, pins):
        await store_manifest(index, arena, "backup_old", b"old", age_days=5)
        pins.pin("backup_old")

        result = await retention.purge_expired(NOW)
        assert result.purged == []
        assert result.skipped_pinned == ["backup_old"]

        pins.unpin("backup_old")
        result = await retention.purge_expired(NOW)
        assert result.purged == ["backup_old"]

    @pytest.mark.asyncio
    async def test_payload_already_missing(self, retention, index, arena):
        manifest = await store_manifest(index, arena, "backup_old", b"old", age_days=5)
        arena.delete(manifest.payload_ref)

        result = await retention.purge_expired(NOW)

        assert result.purged == ["backup_old"]
        assert result.payloads_deleted == 0


class TestBackupScheduler:
    """Tests for BackupScheduler jobs."""

    @pytest.fixture
    async def components(self, data_dir, store, entity_sets):
        index = ManifestIndex(data_dir)
        await index.initialize()
        arena = PayloadArena(data_dir)
        lock = RestoreLock()
        coordinator = SnapshotCoordinator(
            store, index, arena, IntegrityVerifier(index, arena), lock,
            audit=InMemoryAuditSink(), entity_sets=entity_sets,
        )
        retention = RetentionManager(index, arena, lock, ManifestPins())
        return index, coordinator, retention

    @pytest.mark.asyncio
    async def test_full_job_snapshots_and_purges(self, components, entity_sets):
        index, coordinator, retention = components
        expired = Manifest(
            manifest_id="backup_expired",
            created_at=NOW - timedelta(days=100),
            kind=ManifestKind.FULL,
            entity_sets=["bills"],
            retention_until=NOW - timedelta(days=10),
            status=ManifestStatus.FAILED,
        )
        await index.save(expired)
        scheduler = BackupScheduler(
            coordinator, retention, entity_sets, ScheduleConfig(), RetentionPolicy(days=90)
        )

        await scheduler.run_full_backup()

        manifests = await index.list_manifests()
        assert [m.kind for m in manifests] == [ManifestKind.FULL]
        assert manifests[0].is_completed
        assert scheduler.stats["full_runs"] == 1

    @pytest.mark.asyncio
    async def test_incremental_job(self, components, entity_sets):
        index, coordinator, retention = components
        scheduler = BackupScheduler(
            coordinator, retention, entity_sets, ScheduleConfig(), RetentionPolicy(days=90)
        )

        await scheduler.run_incremental_backup()

        [manifest] = await index.list_manifests()
        assert manifest.kind == ManifestKind.INCREMENTAL
        assert manifest.entity_sets == ["bills"]

    @pytest.mark.asyncio
    async def test_loop_runs_jobs_until_stopped(self, components, entity_sets):
        index, coordinator, retention = components
        schedule = ScheduleConfig(enabled=True, full_interval_seconds=0, incremental_interval_seconds=3600)
        scheduler = BackupScheduler(coordinator, retention, entity_sets, schedule, RetentionPolicy(days=90))

        task = asyncio.create_task(scheduler.start())
        while scheduler.stats["full_runs"] < 2:
            await asyncio.sleep(0.01)
        await scheduler.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert len(await index.list_manifests(kind=ManifestKind.FULL)) >= 2
        assert scheduler.stats["running"] is False
