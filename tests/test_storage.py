from __future__ import annotations

import pytest

from schema_workspace.app.event_log import EventLog
from schema_workspace.app.models import LogEntry
from schema_workspace.app.storage import (
    InMemorySnapshotStorage,
    PostgresSnapshotStorage,
    StorageCapacityError,
)


def test_in_memory_storage_round_trip_and_clear() -> None:
    storage = InMemorySnapshotStorage()
    assert storage.load_snapshot() is None

    storage.save_snapshot({"schema_name": "Customer", "files": []})
    assert storage.load_snapshot() == {"schema_name": "Customer", "files": []}

    storage.clear_snapshot()
    assert storage.load_snapshot() is None


def test_in_memory_storage_enforces_capacity() -> None:
    storage = InMemorySnapshotStorage(capacity_bytes=16)
    storage.save_snapshot({"a": 1})

    with pytest.raises(StorageCapacityError, match="exceeds capacity"):
        storage.save_snapshot({"payload": "x" * 64})
    # The previous snapshot survives a refused write.
    assert storage.load_snapshot() == {"a": 1}


def test_postgres_storage_requires_database_url() -> None:
    with pytest.raises(ValueError, match="database_url is required"):
        PostgresSnapshotStorage("")


def test_event_log_is_newest_first_and_broadcasts() -> None:
    log = EventLog()
    received: list[tuple[LogEntry, ...]] = []
    unsubscribe = log.subscribe(received.append)

    log.record("info", "first")
    log.record("error", "second", {"error": "boom"})

    assert [entry.title for entry in log.entries()] == ["second", "first"]
    assert log.entries()[0].data == {"error": "boom"}
    assert len(received) == 2
    assert len(received[-1]) == 2

    unsubscribe()
    log.clear()
    assert log.entries() == ()
    assert len(received) == 2
