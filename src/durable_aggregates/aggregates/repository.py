"""
Repository - load aggregates from their streams and save what they raised

Load: snapshot (if any, and compatible) + tail of the stream, replayed
through the aggregate's router.

Save:
1. nothing pending -> no-op
2. read what other commits appended since the aggregate was loaded
3. conflict detector on (ours, theirs) -> ConflictingCommandException
4. compare-and-append against the observed stream head
   -> StoreConcurrencyException if another writer got there first
5. publish (best effort; the stream is already the source of truth)
6. mark the aggregate committed; if it was rebased, mark it stale so
   it refuses further events until reloaded

The repository never retries: only the command layer knows whether
re-running a command is safe.
"""

import time
from collections.abc import Sequence
from typing import Generic, TypeVar

from durable_aggregates.aggregates.conflicts import ConflictDetector
from durable_aggregates.aggregates.root import AggregateRoot
from durable_aggregates.kernel.bus import EventPublisher
from durable_aggregates.kernel.errors import (
    AggregateNotFound,
    ConflictingCommandException,
    EventPublishError,
    StaleAggregate,
    StoreConcurrencyException,
    StreamVersionConflict,
)
from durable_aggregates.kernel.event_store import EventStore
from durable_aggregates.kernel.events import Event
from durable_aggregates.kernel.logging import correlation_id_var, get_logger
from durable_aggregates.kernel.metrics import (
    aggregate_conflicts_total,
    events_appended_total,
    events_loaded_total,
    publish_failures_total,
    rebased_saves_total,
    save_duration_seconds,
    snapshots_total,
    store_concurrency_conflicts_total,
)
from durable_aggregates.kernel.settings import EngineSettings
from durable_aggregates.kernel.snapshot_store import Snapshot, SnapshotStore
from durable_aggregates.kernel.time import TimeProvider, default_time_provider

logger = get_logger(__name__)

A = TypeVar("A", bound=AggregateRoot)


class Repository(Generic[A]):
    """
    Persistence for one aggregate class

    Collaborators are injected; the publisher and snapshot store are
    optional. The conflict detector defaults to same-type-conflicts
    rules and is frozen on construction. Loaded aggregates timestamp
    new events with `time_provider` and route with
    `settings.strict_routing` unless their class pins a mode.
    """

    def __init__(
        self,
        aggregate_cls: type[A],
        event_store: EventStore,
        publisher: EventPublisher | None = None,
        conflict_detector: ConflictDetector | None = None,
        snapshot_store: SnapshotStore | None = None,
        settings: EngineSettings | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self.aggregate_cls = aggregate_cls
        self.event_store = event_store
        self.publisher = publisher
        self.conflict_detector = (conflict_detector or ConflictDetector()).freeze()
        self.snapshot_store = snapshot_store
        self.settings = settings or EngineSettings()
        self.time_provider = time_provider or default_time_provider

    @property
    def aggregate_type(self) -> str:
        return self.aggregate_cls.aggregate_type

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def get_by_id(self, aggregate_id: str, version: int | None = None) -> A:
        """
        Rebuild an aggregate from its stream

        Args:
            aggregate_id: Stream to load
            version: Reconstruct as of this version (events <= version);
                None loads everything

        Raises:
            AggregateNotFound: the stream has no events (up to `version`)
            InvalidHistory: the stored stream is inconsistent
            NoHandlerForEvent: strict routing met an event without a handler
        """
        if version is not None and version < 1:
            raise ValueError(f"version must be >= 1, got {version}")

        aggregate = self.aggregate_cls(aggregate_id)
        aggregate.clock = self.time_provider
        aggregate.use_routing_mode(self.settings.strict_routing)
        snapshot = await self._usable_snapshot(aggregate, version)

        if snapshot is not None:
            aggregate.restore_from_snapshot(snapshot)
            if version is None:
                tail = await self.event_store.read_since(aggregate_id, snapshot.version)
            else:
                tail = [
                    e
                    for e in await self.event_store.read_since(aggregate_id, snapshot.version)
                    if e.version <= version
                ]
            aggregate.load_from_history(tail, from_snapshot_version=snapshot.version)
            replayed = len(tail)
        else:
            if version is None:
                history = await self.event_store.read_all(aggregate_id)
            else:
                history = await self.event_store.read_up_to(aggregate_id, version)
            if not history:
                raise AggregateNotFound(aggregate_id)
            aggregate.load_from_history(history)
            replayed = len(history)

        events_loaded_total.labels(aggregate_type=self.aggregate_type).inc(replayed)
        logger.debug(
            "Aggregate loaded",
            aggregate_type=self.aggregate_type,
            aggregate_id=aggregate_id,
            version=aggregate.version,
            replayed=replayed,
            from_snapshot=snapshot.version if snapshot else None,
        )
        return aggregate

    async def _usable_snapshot(self, aggregate: A, version: int | None) -> Snapshot | None:
        """Snapshot to start from, or None; lookup problems fall back to full replay"""
        if self.snapshot_store is None or not aggregate.supports_snapshots():
            return None
        try:
            snapshot = await self.snapshot_store.get(aggregate.id)
        except Exception as e:
            snapshots_total.labels(aggregate_type=self.aggregate_type, operation="error").inc()
            logger.warning(
                "Snapshot read failed, replaying full stream",
                aggregate_id=aggregate.id,
                error=str(e),
            )
            return None

        if (
            snapshot is None
            or snapshot.aggregate_type != self.aggregate_type
            or (version is not None and snapshot.version > version)
        ):
            snapshots_total.labels(aggregate_type=self.aggregate_type, operation="miss").inc()
            return None

        snapshots_total.labels(aggregate_type=self.aggregate_type, operation="hit").inc()
        return snapshot

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    async def save(self, aggregate: A, commit_id: str, *, who: str | None = None) -> list[Event]:
        """
        Persist the aggregate's pending events as one commit

        The correlation id bound to the current context (if any) is
        stamped on the events as well.

        Args:
            aggregate: Aggregate carrying uncommitted events
            commit_id: Commit (causation) id stamped on every event; reusing
                the id of an already-stored commit is idempotent
            who: Actor stamped on events that don't name one

        Returns:
            The events as stored (empty when there was nothing to save)

        Raises:
            ConflictingCommandException: a concurrently committed event conflicts
            StoreConcurrencyException: the atomic append lost a race
            StaleAggregate: an earlier save of this instance was rebased
        """
        if aggregate.stale:
            raise StaleAggregate(aggregate.id, aggregate.version)
        pending = aggregate.uncommitted_events
        if not pending:
            return []
        if not commit_id:
            raise ValueError("commit_id must be a non-empty string")

        started = time.perf_counter()
        loaded_version = aggregate.committed_version

        concurrent = [
            e
            for e in await self.event_store.read_since(aggregate.id, loaded_version)
            if e.commit_id != commit_id
        ]
        if concurrent:
            self._check_conflicts(aggregate, pending, concurrent)

        expected_version = loaded_version + len(concurrent)
        batch = self._prepare_batch(
            pending, commit_id, who, correlation_id_var.get() or None, expected_version
        )

        try:
            stored = await self.event_store.append(aggregate.id, expected_version, batch)
        except StreamVersionConflict as e:
            store_concurrency_conflicts_total.labels(aggregate_type=self.aggregate_type).inc()
            logger.warning(
                "Append lost a concurrency race",
                aggregate_type=self.aggregate_type,
                aggregate_id=aggregate.id,
                expected_version=e.expected_version,
                actual_version=e.actual_version,
            )
            raise StoreConcurrencyException(
                aggregate.id, e.expected_version, e.actual_version
            ) from e

        for event in stored:
            events_appended_total.labels(
                aggregate_type=self.aggregate_type, event_type=event.event_type
            ).inc()
        if concurrent:
            rebased_saves_total.labels(aggregate_type=self.aggregate_type).inc()

        await self._publish(stored)
        aggregate.mark_committed()
        if concurrent:
            aggregate.mark_stale()

        save_duration_seconds.labels(aggregate_type=self.aggregate_type).observe(
            time.perf_counter() - started
        )
        logger.info(
            "Aggregate saved",
            aggregate_type=self.aggregate_type,
            aggregate_id=aggregate.id,
            commit_id=commit_id,
            events=len(stored),
            stream_version=stored[-1].version,
            rebased_over=len(concurrent),
        )

        await self._maybe_snapshot(aggregate, loaded_version)
        return stored

    def _check_conflicts(
        self, aggregate: A, pending: Sequence[Event], concurrent: Sequence[Event]
    ) -> None:
        conflict = self.conflict_detector.find_conflict(pending, concurrent)
        if conflict is None:
            return
        ours, theirs = conflict
        aggregate_conflicts_total.labels(aggregate_type=self.aggregate_type).inc()
        logger.info(
            "Save rejected by conflicting concurrent commit",
            aggregate_type=self.aggregate_type,
            aggregate_id=aggregate.id,
            uncommitted_type=ours.event_type,
            committed_type=theirs.event_type,
            committed_version=theirs.version,
        )
        raise ConflictingCommandException(aggregate.id, ours.event_type, theirs.event_type)

    @staticmethod
    def _prepare_batch(
        pending: Sequence[Event],
        commit_id: str,
        who: str | None,
        correlation_id: str | None,
        expected_version: int,
    ) -> list[Event]:
        """Stamp commit metadata and renumber on top of the observed stream head"""
        batch = []
        for offset, event in enumerate(pending, start=1):
            stamped = event.stamped(commit_id, who, correlation_id)
            if stamped.version != expected_version + offset:
                stamped = stamped.model_copy(update={"version": expected_version + offset})
            batch.append(stamped)
        return batch

    async def _publish(self, events: Sequence[Event]) -> None:
        if self.publisher is None:
            return
        for event in events:
            try:
                await self.publisher.publish(event)
            except EventPublishError as e:
                publish_failures_total.labels(event_type=event.event_type).inc()
                logger.error(
                    "Event durable but publication failed",
                    event_type=event.event_type,
                    event_id=event.event_id,
                    aggregate_id=event.aggregate_id,
                    error=str(e),
                )
            except Exception as e:
                publish_failures_total.labels(event_type=event.event_type).inc()
                logger.error(
                    "Event durable but publisher raised",
                    event_type=event.event_type,
                    event_id=event.event_id,
                    aggregate_id=event.aggregate_id,
                    error=str(e),
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def _maybe_snapshot(self, aggregate: A, loaded_version: int) -> None:
        interval = self.settings.snapshot_interval
        if interval is None or aggregate.stale or not aggregate.supports_snapshots():
            return
        if aggregate.version // interval > loaded_version // interval:
            await self.take_snapshot(aggregate)

    async def take_snapshot(self, aggregate: A) -> Snapshot | None:
        """
        Store a snapshot of a committed aggregate, best effort

        Returns:
            The stored snapshot, or None when skipped or failed
        """
        if self.snapshot_store is None or not aggregate.supports_snapshots():
            return None
        if aggregate.uncommitted_events or aggregate.stale:
            logger.debug(
                "Skipping snapshot of aggregate that does not mirror its stream",
                aggregate_id=aggregate.id,
            )
            return None
        try:
            snapshot = aggregate.snapshot()
            await self.snapshot_store.put(snapshot)
        except Exception as e:
            snapshots_total.labels(aggregate_type=self.aggregate_type, operation="error").inc()
            logger.warning(
                "Snapshot write failed",
                aggregate_id=aggregate.id,
                version=aggregate.version,
                error=str(e),
            )
            return None
        snapshots_total.labels(aggregate_type=self.aggregate_type, operation="write").inc()
        logger.debug("Snapshot written", aggregate_id=aggregate.id, version=snapshot.version)
        return snapshot
