"""
Shared test fixtures for BillVault.

Provides a temporary data directory, a small billing dataset and a
BackupService wired to the in-memory entity store, replica transport,
audit sink and alert channel.
"""

import tempfile

import pytest

from dr.billvault.audit import InMemoryAuditSink, InMemoryOperatorAlert
from dr.billvault.config import (
    EntitySetConfig,
    ReplicationConfig,
    ScheduleConfig,
    ServiceConfig,
    StorageConfig,
)
from dr.billvault.replication.memory import InMemoryReplicaTransport
from dr.billvault.service import BackupService
from dr.billvault.store.memory import InMemoryEntityStore

ENTITY_SETS = EntitySetConfig(
    full_sets=("bills", "commodities", "users"),
    incremental_sets=("bills",),
    timestamp_fields=("updated_at", "created_at"),
)


def billing_records():
    """Two users, five bills and one commodity."""
    return {
        "users": [
            {"_id": "u1", "name": "Alice", "created_at": "2026-01-01T00:00:00+00:00"},
            {"_id": "u2", "name": "Bob", "created_at": "2026-01-02T00:00:00+00:00"},
        ],
        "bills": [
            {
                "_id": f"b{i}",
                "user_id": "u1" if i % 2 else "u2",
                "amount": i * 100,
                "created_at": f"2026-03-0{i}T12:00:00+00:00",
            }
            for i in range(1, 6)
        ],
        "commodities": [
            {"_id": "c1", "name": "Electricity", "unit": "kWh", "created_at": "2026-01-01T00:00:00+00:00"},
        ],
    }


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def store():
    """In-memory entity store loaded with the billing dataset."""
    return InMemoryEntityStore(billing_records())


@pytest.fixture
def transport():
    return InMemoryReplicaTransport()


@pytest.fixture
def audit():
    return InMemoryAuditSink()


@pytest.fixture
def alert():
    return InMemoryOperatorAlert()


@pytest.fixture
def config(data_dir):
    """Service configuration with one replica node and no schedule."""
    return ServiceConfig(
        storage=StorageConfig(data_dir=data_dir, store_path=f"{data_dir}/entities.db"),
        entity_sets=ENTITY_SETS,
        replication=ReplicationConfig(
            nodes=(("secondary1", "memory://secondary1"),),
            max_retries=1,
            retry_base_ms=1,
            timeout_seconds=5.0,
        ),
        schedule=ScheduleConfig(enabled=False),
    )


@pytest.fixture
async def service(config, store, transport, audit, alert):
    """BackupService over in-memory components."""
    svc = BackupService(config, store=store, transport=transport, audit=audit, alert=alert)
    await svc.initialize()
    yield svc
    await svc.stop()


@pytest.fixture
def entity_sets():
    return ENTITY_SETS


@pytest.fixture
def records():
    """A fresh copy of the billing dataset."""
    return billing_records()
