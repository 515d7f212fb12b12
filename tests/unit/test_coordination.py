"""
Unit tests for the restore lock, manifest pins and audit sinks.
"""

import asyncio

import pytest

from dr.billvault.audit import (
    AuditEntry,
    InMemoryAuditSink,
    JsonlAuditSink,
    record_safely,
)
from dr.billvault.coordination import ManifestPins, RestoreLock
from dr.billvault.errors import LockContention


class TestRestoreLock:
    """Tests for RestoreLock."""

    @pytest.mark.asyncio
    async def test_shared_holders_coexist(self):
        lock = RestoreLock()
        async with lock.shared():
            async with lock.shared():
                assert lock.readers == 2
        assert lock.readers == 0

    @pytest.mark.asyncio
    async def test_second_exclusive_is_rejected(self):
        lock = RestoreLock()
        async with lock.exclusive("restore_a"):
            assert lock.holder == "restore_a"
            with pytest.raises(LockContention) as exc_info:
                async with lock.exclusive("restore_b"):
                    pass
            assert exc_info.value.holder == "restore_a"
        assert lock.holder is None

    @pytest.mark.asyncio
    async def test_exclusive_waits_for_shared(self):
        lock = RestoreLock()
        order = []
        release = asyncio.Event()

        async def backup():
            async with lock.shared():
                order.append("backup_start")
                await release.wait()
                order.append("backup_end")

        async def restore():
            async with lock.exclusive("restore_a"):
                order.append("restore")

        backup_task = asyncio.create_task(backup())
        await asyncio.sleep(0)
        restore_task = asyncio.create_task(restore())
        await asyncio.sleep(0.01)
        assert order == ["backup_start"]

        release.set()
        await asyncio.gather(backup_task, restore_task)
        assert order == ["backup_start", "backup_end", "restore"]

    @pytest.mark.asyncio
    async def test_shared_waits_for_exclusive(self):
        lock = RestoreLock()
        order = []

        async def purge():
            async with lock.shared():
                order.append("purge")

        async with lock.exclusive("restore_a"):
            task = asyncio.create_task(purge())
            await asyncio.sleep(0.01)
            assert order == []
            order.append("restore")
        await task
        assert order == ["restore", "purge"]

    @pytest.mark.asyncio
    async def test_exclusive_released_on_error(self):
        lock = RestoreLock()
        with pytest.raises(RuntimeError):
            async with lock.exclusive("restore_a"):
                raise RuntimeError("boom")
        async with lock.exclusive("restore_b"):
            assert lock.holder == "restore_b"


class TestManifestPins:
    """Tests for ManifestPins."""

    def test_pin_counts(self):
        pins = ManifestPins()
        pins.pin("backup_1")
        pins.pin("backup_1")
        pins.unpin("backup_1")
        assert pins.is_pinned("backup_1")
        pins.unpin("backup_1")
        assert not pins.is_pinned("backup_1")
        assert pins.pinned() == set()


class TestAuditSinks:
    """Tests for audit sinks."""

    @pytest.mark.asyncio
    async def test_entry_shape(self):
        entry = AuditEntry(action="create", after={"manifestId": "backup_1"})
        data = entry.to_dict()
        assert data["entity_type"] == "settings"
        assert data["entity_id"] == "backup_system"
        assert data["user_id"] == "system"
        assert data["after"] == {"manifestId": "backup_1"}
        assert data["timestamp"]

    @pytest.mark.asyncio
    async def test_jsonl_sink_appends(self, tmp_path):
        sink = JsonlAuditSink(tmp_path / "audit" / "trail.jsonl")
        await sink.record(AuditEntry(action="create"))
        await sink.record(AuditEntry(action="purge", user_id="admin"))

        entries = sink.read_entries()
        assert [e["action"] for e in entries] == ["create", "purge"]
        assert entries[1]["user_id"] == "admin"

    @pytest.mark.asyncio
    async def test_record_safely_swallows_sink_failure(self):
        class BrokenSink:
            async def record(self, entry):
                raise OSError("disk full")

        await record_safely(BrokenSink(), AuditEntry(action="create"))

    @pytest.mark.asyncio
    async def test_in_memory_sink(self):
        sink = InMemoryAuditSink()
        await sink.record(AuditEntry(action="create"))
        await sink.record(AuditEntry(action="purge"))
        assert sink.actions() == ["create", "purge"]
        assert len(sink.by_action("purge")) == 1
