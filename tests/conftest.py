"""
Pytest configuration and shared fixtures

Fun fact: Files named conftest.py are discovered automatically - their
fixtures are available to every test in the same directory and below!
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest

from durable_aggregates.aggregates.repository import Repository
from durable_aggregates.kernel.bus import InProcessEventPublisher
from durable_aggregates.kernel.event_store import InMemoryEventStore, SQLiteEventStore
from durable_aggregates.kernel.events import EventTypeRegistry
from durable_aggregates.kernel.serializer import JsonEventSerializer
from durable_aggregates.kernel.snapshot_store import InMemorySnapshotStore, SQLiteSnapshotStore
from durable_aggregates.kernel.time import TestTimeProvider
from durable_aggregates.ledger import (
    Account,
    build_ledger_conflict_detector,
    build_ledger_registry,
)
from tests.helpers import TEST_EVENTS, RecordingPublisher


@pytest.fixture
def temp_db() -> Iterator[Path]:
    """Provide a temporary database file that's cleaned up after test"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    for suffix in ("", "-wal", "-shm"):
        path = Path(f"{db_path}{suffix}")
        if path.exists():
            path.unlink()


@pytest.fixture
def registry() -> EventTypeRegistry:
    """Ledger events plus the test-only events from helpers"""
    return build_ledger_registry(EventTypeRegistry(TEST_EVENTS))


@pytest.fixture
def serializer(registry: EventTypeRegistry) -> JsonEventSerializer:
    return JsonEventSerializer(registry)


@pytest.fixture
def memory_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def sqlite_store(temp_db: Path, serializer: JsonEventSerializer) -> SQLiteEventStore:
    return SQLiteEventStore(temp_db, serializer)


@pytest.fixture(params=["memory", "sqlite"])
def event_store(request: pytest.FixtureRequest, temp_db: Path, serializer: JsonEventSerializer):
    """Every store-contract test runs against both implementations"""
    if request.param == "memory":
        return InMemoryEventStore()
    return SQLiteEventStore(temp_db, serializer)


@pytest.fixture
def snapshot_store() -> InMemorySnapshotStore:
    return InMemorySnapshotStore()


@pytest.fixture
def sqlite_snapshot_store(temp_db: Path, serializer: JsonEventSerializer) -> SQLiteSnapshotStore:
    return SQLiteSnapshotStore(temp_db, serializer)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def in_process_publisher() -> InProcessEventPublisher:
    return InProcessEventPublisher()


@pytest.fixture
def account_repository(
    memory_store: InMemoryEventStore, publisher: RecordingPublisher
) -> Repository[Account]:
    return Repository(
        Account,
        memory_store,
        publisher=publisher,
        conflict_detector=build_ledger_conflict_detector(),
    )


@pytest.fixture
def test_time() -> TestTimeProvider:
    """Deterministic clock: 2025-01-15 12:00:00 UTC"""
    return TestTimeProvider(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))
