"""
Tests for the Repository: load, save, conflicts, publishing, snapshots
"""

import asyncio

import pytest

from durable_aggregates.aggregates.conflicts import ConflictDetector, never_conflicts
from durable_aggregates.aggregates.repository import Repository
from durable_aggregates.kernel.errors import (
    AggregateNotFound,
    ConflictingCommandException,
    NoHandlerForEvent,
    StaleAggregate,
    StoreConcurrencyException,
)
from durable_aggregates.kernel.event_store import InMemoryEventStore
from durable_aggregates.kernel.logging import correlation_scope
from durable_aggregates.kernel.settings import EngineSettings
from durable_aggregates.kernel.snapshot_store import InMemorySnapshotStore
from tests.helpers import (
    CountingEventStore,
    Counter,
    Decremented,
    Incremented,
    LenientCounter,
    RecordingPublisher,
    Tally,
    Unhandled,
    stored_events,
)


@pytest.fixture
def repository(event_store, publisher) -> Repository[Counter]:
    return Repository(Counter, event_store, publisher=publisher)


async def create_counter(repository: Repository[Counter], aggregate_id: str = "c-1", n: int = 1):
    counter = Counter(aggregate_id)
    for _ in range(n):
        counter.increment()
    await repository.save(counter, f"create-{aggregate_id}")
    return counter


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


async def test_unknown_aggregate_raises_not_found(repository: Repository[Counter]) -> None:
    with pytest.raises(AggregateNotFound) as exc_info:
        await repository.get_by_id("missing")
    assert exc_info.value.aggregate_id == "missing"


async def test_create_save_reload(repository: Repository[Counter]) -> None:
    counter = Counter("c-1")
    counter.increment(5)
    counter.relabel("five")
    counter.decrement(2)
    await repository.save(counter, "commit-1")

    loaded = await repository.get_by_id("c-1")

    assert loaded.state() == counter.state()
    assert loaded.version == 3
    assert loaded.uncommitted_events == ()


async def test_loaded_version_equals_event_count(
    repository: Repository[Counter], event_store
) -> None:
    await event_store.append("c-1", 0, stored_events("c-1", [Incremented() for _ in range(7)]))
    loaded = await repository.get_by_id("c-1")
    assert loaded.version == 7
    assert loaded.value == 7


async def test_point_in_time_load(repository: Repository[Counter]) -> None:
    counter = Counter("c-1")
    counter.increment(1)
    counter.increment(10)
    counter.increment(100)
    await repository.save(counter, "commit-1")

    as_of_two = await repository.get_by_id("c-1", version=2)
    assert as_of_two.version == 2
    assert as_of_two.value == 11

    beyond = await repository.get_by_id("c-1", version=50)
    assert beyond.version == 3

    with pytest.raises(ValueError):
        await repository.get_by_id("c-1", version=0)


async def test_lenient_aggregate_skips_unknown_events(event_store) -> None:
    history = stored_events(
        "c-1", [Incremented(), Unhandled(note="x"), Incremented()], aggregate_type="lenient-counter"
    )
    await event_store.append("c-1", 0, history)

    loaded = await Repository(LenientCounter, event_store).get_by_id("c-1")

    assert loaded.value == 2
    assert loaded.version == 3


# ---------------------------------------------------------------------------
# Saving
# ---------------------------------------------------------------------------


async def test_save_without_changes_is_noop(repository: Repository[Counter], event_store) -> None:
    assert await repository.save(Counter("c-1"), "commit-1") == []
    assert await event_store.get_stream_version("c-1") == 0


async def test_save_requires_commit_id(repository: Repository[Counter]) -> None:
    counter = Counter("c-1")
    counter.increment()
    with pytest.raises(ValueError):
        await repository.save(counter, "")


async def test_save_stamps_and_marks_committed(
    repository: Repository[Counter], publisher: RecordingPublisher
) -> None:
    counter = Counter("c-1")
    counter.increment()
    counter.increment()

    stored = await repository.save(counter, "commit-1", who="alice")

    assert [e.version for e in stored] == [1, 2]
    assert {e.commit_id for e in stored} == {"commit-1"}
    assert {e.who for e in stored} == {"alice"}
    assert counter.uncommitted_events == ()
    assert counter.stale is False
    assert publisher.published == stored


async def test_save_with_same_commit_id_is_idempotent(
    repository: Repository[Counter], event_store
) -> None:
    first = Counter("c-1")
    first.increment()
    await repository.save(first, "commit-1")

    # same command re-run after a lost acknowledgement
    retry = Counter("c-1")
    retry.increment()
    stored = await repository.save(retry, "commit-1")

    assert await event_store.get_stream_version("c-1") == 1
    assert [e.event_id for e in stored] == [
        e.event_id for e in await event_store.read_all("c-1")
    ]


async def test_same_type_concurrent_save_conflicts(repository: Repository[Counter]) -> None:
    await create_counter(repository)
    first = await repository.get_by_id("c-1")
    second = await repository.get_by_id("c-1")

    first.increment()
    await repository.save(first, "commit-a")

    second.increment()
    with pytest.raises(ConflictingCommandException) as exc_info:
        await repository.save(second, "commit-b")

    assert exc_info.value.uncommitted_type == "Incremented"
    assert exc_info.value.committed_type == "Incremented"
    assert len(second.uncommitted_events) == 1


async def test_different_type_concurrent_save_is_rebased(
    repository: Repository[Counter], event_store
) -> None:
    await create_counter(repository, n=3)
    first = await repository.get_by_id("c-1")
    second = await repository.get_by_id("c-1")

    first.increment()
    await repository.save(first, "commit-a")

    second.relabel("rebased")
    stored = await repository.save(second, "commit-b")

    assert [e.version for e in stored] == [5]
    assert second.stale is True
    assert second.uncommitted_events == ()

    reloaded = await repository.get_by_id("c-1")
    assert reloaded.version == 5
    assert reloaded.value == 4
    assert reloaded.label == "rebased"


async def test_custom_rule_allows_same_type(event_store) -> None:
    detector = ConflictDetector()
    detector.register(Incremented, Incremented, never_conflicts)
    repository = Repository(Counter, event_store, conflict_detector=detector)
    await create_counter(repository)

    first = await repository.get_by_id("c-1")
    second = await repository.get_by_id("c-1")
    first.increment()
    second.increment()
    await repository.save(first, "commit-a")
    await repository.save(second, "commit-b")

    assert (await repository.get_by_id("c-1")).value == 3
    assert detector.frozen


async def test_repository_never_retries(repository: Repository[Counter], event_store) -> None:
    await create_counter(repository, n=2)
    first = await repository.get_by_id("c-1")
    second = await repository.get_by_id("c-1")
    first.decrement()
    await repository.save(first, "commit-a")

    second.decrement()
    with pytest.raises(ConflictingCommandException):
        await repository.save(second, "commit-b")
    assert await event_store.get_stream_version("c-1") == 3


class RacingEventStore(InMemoryEventStore):
    """Lets a competing writer append between the conflict check and our append"""

    def __init__(self) -> None:
        super().__init__()
        self.race_next_append = False

    async def append(self, aggregate_id, expected_version, events):
        if self.race_next_append:
            self.race_next_append = False
            competing = stored_events(
                aggregate_id, [Decremented()], start_version=expected_version + 1, commit_id="rival"
            )
            await super().append(aggregate_id, expected_version, competing)
        return await super().append(aggregate_id, expected_version, events)


async def test_lost_append_race_raises_store_concurrency() -> None:
    store = RacingEventStore()
    repository = Repository(Counter, store)
    await create_counter(repository, n=2)

    counter = await repository.get_by_id("c-1")
    counter.relabel("late")
    store.race_next_append = True

    with pytest.raises(StoreConcurrencyException) as exc_info:
        await repository.save(counter, "commit-b")

    assert exc_info.value.expected_version == 2
    assert exc_info.value.actual_version == 3
    assert len(counter.uncommitted_events) == 1
    assert [e.commit_id for e in await store.read_all("c-1")][-1] == "rival"


async def test_concurrent_saves_on_loop_one_wins() -> None:
    store = InMemoryEventStore()
    repository = Repository(Counter, store)
    await create_counter(repository)

    contenders = [await repository.get_by_id("c-1") for _ in range(5)]
    for counter in contenders:
        counter.increment()

    results = await asyncio.gather(
        *(repository.save(c, f"commit-{i}") for i, c in enumerate(contenders)),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(succeeded) == 1
    assert all(
        isinstance(r, (ConflictingCommandException, StoreConcurrencyException)) for r in failed
    )
    assert await store.get_stream_version("c-1") == 2


async def test_publish_failure_does_not_undo_save(event_store) -> None:
    publisher = RecordingPublisher(fail_with=RuntimeError("broker down"))
    repository = Repository(Counter, event_store, publisher=publisher)

    counter = Counter("c-1")
    counter.increment()
    stored = await repository.save(counter, "commit-1")

    assert len(stored) == 1
    assert counter.uncommitted_events == ()
    assert await event_store.get_stream_version("c-1") == 1


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@pytest.fixture
def snapshot_settings() -> EngineSettings:
    return EngineSettings(snapshot_interval=10)


async def test_snapshot_written_when_crossing_interval(
    event_store, snapshot_store: InMemorySnapshotStore, snapshot_settings: EngineSettings
) -> None:
    repository = Repository(
        Counter, event_store, snapshot_store=snapshot_store, settings=snapshot_settings
    )
    await create_counter(repository, n=9)
    assert await snapshot_store.get("c-1") is None

    counter = await repository.get_by_id("c-1")
    counter.increment()
    counter.increment()
    await repository.save(counter, "commit-2")

    snapshot = await snapshot_store.get("c-1")
    assert snapshot is not None
    assert snapshot.version == 11
    assert snapshot.state["value"] == 11


async def test_load_replays_only_tail_after_snapshot(
    event_store, snapshot_store: InMemorySnapshotStore, snapshot_settings: EngineSettings
) -> None:
    writer = Repository(
        Counter, event_store, snapshot_store=snapshot_store, settings=snapshot_settings
    )
    await create_counter(writer, n=10)
    assert (await snapshot_store.get("c-1")).version == 10

    counter = await writer.get_by_id("c-1")
    for _ in range(3):
        counter.increment()
    await writer.save(counter, "commit-2")

    counting = CountingEventStore(event_store)
    reader = Repository(Counter, counting, snapshot_store=snapshot_store)
    loaded = await reader.get_by_id("c-1")

    assert loaded.version == 13
    assert loaded.value == 13
    assert counting.events_read == 3
    assert counting.calls == ["read_since"]


async def test_point_in_time_before_snapshot_replays_from_start(
    event_store, snapshot_store: InMemorySnapshotStore, snapshot_settings: EngineSettings
) -> None:
    repository = Repository(
        Counter, event_store, snapshot_store=snapshot_store, settings=snapshot_settings
    )
    await create_counter(repository, n=12)

    counting = CountingEventStore(event_store)
    reader = Repository(Counter, counting, snapshot_store=snapshot_store)
    loaded = await reader.get_by_id("c-1", version=4)

    assert loaded.value == 4
    assert counting.calls == ["read_up_to"]


async def test_snapshot_read_failure_falls_back_to_replay(event_store) -> None:
    class BrokenSnapshotStore(InMemorySnapshotStore):
        async def get(self, aggregate_id):
            raise OSError("disk gone")

    repository = Repository(Counter, event_store, snapshot_store=BrokenSnapshotStore())
    await create_counter(repository, n=3)

    assert (await repository.get_by_id("c-1")).value == 3


async def test_rebased_aggregate_is_not_snapshotted(
    event_store, snapshot_store: InMemorySnapshotStore
) -> None:
    repository = Repository(
        Counter,
        event_store,
        snapshot_store=snapshot_store,
        settings=EngineSettings(snapshot_interval=2),
    )
    await create_counter(repository)
    first = await repository.get_by_id("c-1")
    second = await repository.get_by_id("c-1")

    first.increment()
    await repository.save(first, "commit-a")
    assert (await snapshot_store.get("c-1")).version == 2

    second.relabel("x")
    second.relabel("y")
    await repository.save(second, "commit-b")

    assert second.stale
    assert (await snapshot_store.get("c-1")).version == 2
    assert await repository.take_snapshot(second) is None


async def test_take_snapshot_explicitly(event_store, snapshot_store) -> None:
    repository = Repository(Counter, event_store, snapshot_store=snapshot_store)
    await create_counter(repository, n=4)
    counter = await repository.get_by_id("c-1")

    snapshot = await repository.take_snapshot(counter)

    assert snapshot is not None
    assert snapshot.version == 4
    assert (await snapshot_store.get("c-1")) == snapshot


async def test_aggregate_without_snapshot_hooks(event_store, snapshot_store) -> None:
    repository = Repository(
        Tally,
        event_store,
        snapshot_store=snapshot_store,
        settings=EngineSettings(snapshot_interval=1),
    )
    tally = Tally("t-1")
    tally.increment(3)
    await repository.save(tally, "commit-1")

    assert await snapshot_store.get("t-1") is None
    assert (await repository.get_by_id("t-1")).value == 3


async def test_save_stamps_bound_correlation_id(repository: Repository[Counter]) -> None:
    counter = Counter("c-1")
    counter.increment()

    with correlation_scope("req-7"):
        stored = await repository.save(counter, "commit-1")

    assert stored[0].correlation_id == "req-7"
    assert (await repository.get_by_id("c-1")).version == 1


# ---------------------------------------------------------------------------
# Stale instances
# ---------------------------------------------------------------------------


async def test_rebased_instance_refuses_further_events(repository: Repository[Counter]) -> None:
    await create_counter(repository)
    first = await repository.get_by_id("c-1")
    second = await repository.get_by_id("c-1")

    first.increment()
    await repository.save(first, "commit-a")
    second.relabel("x")
    await repository.save(second, "commit-b")
    assert second.stale

    with pytest.raises(StaleAggregate) as exc_info:
        second.relabel("y")
    assert exc_info.value.aggregate_id == "c-1"
    assert second.uncommitted_events == ()

    with pytest.raises(StaleAggregate):
        await repository.save(second, "commit-c")


async def test_reloaded_instance_continues_after_rebase(repository: Repository[Counter]) -> None:
    await create_counter(repository)
    first = await repository.get_by_id("c-1")
    second = await repository.get_by_id("c-1")

    first.increment()
    await repository.save(first, "commit-a")
    second.relabel("x")
    await repository.save(second, "commit-b")

    reloaded = await repository.get_by_id("c-1")
    assert reloaded.stale is False
    reloaded.relabel("y")
    stored = await repository.save(reloaded, "commit-c")

    assert [e.version for e in stored] == [4]
    final = await repository.get_by_id("c-1")
    assert final.label == "y"
    assert final.value == 2


# ---------------------------------------------------------------------------
# Routing mode from settings
# ---------------------------------------------------------------------------


class PinnedStrictCounter(Counter):
    aggregate_type = "counter"
    strict_routing = True


async def seed_with_unhandled(event_store) -> None:
    history = stored_events("c-1", [Incremented(), Unhandled(note="x"), Incremented()])
    await event_store.append("c-1", 0, history)


async def test_default_settings_route_strictly(event_store) -> None:
    await seed_with_unhandled(event_store)

    with pytest.raises(NoHandlerForEvent):
        await Repository(Counter, event_store).get_by_id("c-1")


async def test_lenient_settings_skip_unknown_events(event_store) -> None:
    await seed_with_unhandled(event_store)
    settings = EngineSettings(strict_routing=False)

    counter = await Repository(Counter, event_store, settings=settings).get_by_id("c-1")

    assert counter.strict is False
    assert counter.value == 2
    assert counter.version == 3


async def test_lenient_settings_apply_to_registration_routing(event_store) -> None:
    history = stored_events(
        "t-1", [Incremented(), Unhandled(note="x")], aggregate_type="tally"
    )
    await event_store.append("t-1", 0, history)
    settings = EngineSettings(strict_routing=False)

    tally = await Repository(Tally, event_store, settings=settings).get_by_id("t-1")

    assert tally.value == 1
    assert tally.version == 2


async def test_class_pinned_mode_overrides_settings(event_store) -> None:
    await seed_with_unhandled(event_store)
    settings = EngineSettings(strict_routing=False)

    with pytest.raises(NoHandlerForEvent):
        await Repository(PinnedStrictCounter, event_store, settings=settings).get_by_id("c-1")
