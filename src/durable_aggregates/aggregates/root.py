"""
Aggregate Root - the unit of consistency

An aggregate's state is whatever its events say it is. Business methods
check invariants and then raise events; only the router's apply
handlers ever write state. That keeps the in-memory object equal to
"replay of everything applied so far", live or reconstructed.

Two ways to obtain an aggregate:
- new: a domain factory validates, constructs, and raises a creation event
- reconstructed: bare constructor + snapshot restore and/or
  load_from_history (done by the Repository)

Fun fact: Eric Evans' "Domain-Driven Design" (2003) introduced aggregates;
event sourcing them came later, popularized by Greg Young around 2007.
"""

from collections.abc import Iterable
from typing import Any, ClassVar

from durable_aggregates.aggregates.router import ConventionEventRouter, EventRouter
from durable_aggregates.kernel.errors import InvalidHistory, RaiseDuringReplay, StaleAggregate
from durable_aggregates.kernel.events import Event
from durable_aggregates.kernel.snapshot_store import Snapshot
from durable_aggregates.kernel.time import TimeProvider, default_time_provider


class AggregateRoot:
    """
    Base class for event-sourced aggregates

    Invariants maintained here:
    - version == number of events applied since construction (plus the
      snapshot version the instance was restored from)
    - uncommitted events are only added by raise_event and only cleared
      by mark_committed
    - replayed events are never re-enqueued as uncommitted

    Subclasses set `aggregate_type`, define apply handlers, and override
    `_build_router` to switch to explicit registration. `strict_routing`
    pins the routing mode for the class; left as None, instances are
    strict unless the repository loads them with lenient settings.
    """

    aggregate_type: ClassVar[str] = ""
    strict_routing: ClassVar[bool | None] = None

    def __init__(self, aggregate_id: str) -> None:
        if not aggregate_id:
            raise ValueError("aggregate_id must be a non-empty string")
        self.id = aggregate_id
        self.version = 0
        self._uncommitted: list[Event] = []
        self._replaying = False
        self._stale = False
        self.clock: TimeProvider = default_time_provider
        self._strict = True if self.strict_routing is None else self.strict_routing
        self._router: EventRouter = self._build_router()

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if not cls.__dict__.get("aggregate_type"):
            cls.aggregate_type = cls.__name__.lower()

    def _build_router(self) -> EventRouter:
        """Convention routing by default; override to register handlers explicitly"""
        return ConventionEventRouter.for_aggregate(self, strict=self.strict)

    @property
    def router(self) -> EventRouter:
        return self._router

    @property
    def strict(self) -> bool:
        """Whether routing an event without a handler raises NoHandlerForEvent"""
        return self._strict

    def use_routing_mode(self, strict: bool) -> None:
        """
        Apply an engine-wide routing mode before any event is applied

        Ignored when the class pins `strict_routing`.
        """
        if self.version or self._uncommitted:
            raise ValueError(f"Aggregate {self.id} already applied events")
        if self.strict_routing is None and strict != self._strict:
            self._strict = strict
            self._router = self._build_router()

    # ------------------------------------------------------------------
    # Event flow
    # ------------------------------------------------------------------

    def raise_event(self, event: Event) -> Event:
        """
        Apply a new event and queue it for persistence

        The event is positioned at version + 1 in this aggregate's stream
        before it is applied. Events created without an explicit
        occurred_at are timestamped from `self.clock`. Invariant checks
        belong in the calling business method; once raised, the event is
        a fact.

        Returns:
            The positioned event that was applied and queued

        Raises:
            RaiseDuringReplay: called from an apply handler during replay
            StaleAggregate: an earlier save was rebased; reload first
            NoHandlerForEvent: strict router has no handler (nothing is queued)
        """
        if self._replaying:
            raise RaiseDuringReplay(self.id, event.event_type)
        if self._stale:
            raise StaleAggregate(self.id, self.version)

        if "occurred_at" not in event.model_fields_set:
            event = event.model_copy(update={"occurred_at": self.clock.now()})
        positioned = event.positioned(self.id, self.aggregate_type, self.version + 1)
        self._router.route(positioned)
        self._uncommitted.append(positioned)
        self.version += 1
        return positioned

    def load_from_history(
        self, events: Iterable[Event], from_snapshot_version: int = 0
    ) -> None:
        """
        Replay stored events without queueing them

        The whole batch is validated before anything is applied: every
        event must belong to this aggregate and continue the stream at
        exactly version + 1. An empty batch is valid.

        Args:
            events: Stored events in ascending version order
            from_snapshot_version: When non-zero, the snapshot version the
                tail continues from; the instance must already be restored
                to it

        Raises:
            InvalidHistory: foreign, out-of-order or non-contiguous events,
                or a tail that does not continue from the snapshot
        """
        history = list(events)
        if from_snapshot_version and self.version != from_snapshot_version:
            raise InvalidHistory(
                self.id,
                f"tail expects snapshot version {from_snapshot_version}, "
                f"aggregate is at version {self.version}",
            )

        expected = self.version
        for event in history:
            if event.aggregate_id != self.id:
                raise InvalidHistory(
                    self.id, f"event {event.event_id} belongs to {event.aggregate_id}"
                )
            expected += 1
            if event.version != expected:
                raise InvalidHistory(
                    self.id,
                    f"event {event.event_id} has version {event.version}, expected {expected}",
                )

        self._replaying = True
        try:
            for event in history:
                self._router.route(event)
                self.version += 1
        finally:
            self._replaying = False

    @property
    def uncommitted_events(self) -> tuple[Event, ...]:
        """Events raised since the last commit, oldest first (read-only view)"""
        return tuple(self._uncommitted)

    def mark_committed(self) -> None:
        """Forget pending events after the repository made them durable"""
        self._uncommitted.clear()

    def mark_stale(self) -> None:
        """
        Flag that the stream moved past this instance's state

        Set by the repository after a save was appended on top of other
        writers' events. The instance still works but no longer mirrors
        the stream: raise_event and Repository.save refuse it with
        StaleAggregate, and it is never snapshotted.
        """
        self._stale = True

    @property
    def stale(self) -> bool:
        return self._stale

    @property
    def committed_version(self) -> int:
        """Version of the stream the pending events were raised on top of"""
        return self.version - len(self._uncommitted)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def supports_snapshots(self) -> bool:
        return (
            type(self)._snapshot_state is not AggregateRoot._snapshot_state
            and type(self)._restore_state is not AggregateRoot._restore_state
        )

    def snapshot(self) -> Snapshot:
        """
        Capture state at the current version

        Raises:
            ValueError: pending events exist (snapshots only cover durable state)
                or nothing has been applied yet
            NotImplementedError: the aggregate has no snapshot hooks
        """
        if self._uncommitted:
            raise ValueError(f"Aggregate {self.id} has uncommitted events; save it first")
        if self._stale:
            raise ValueError(f"Aggregate {self.id} is stale; reload it before snapshotting")
        if self.version == 0:
            raise ValueError(f"Aggregate {self.id} has no state to snapshot")
        return Snapshot(
            aggregate_id=self.id,
            aggregate_type=self.aggregate_type,
            version=self.version,
            state=self._snapshot_state(),
            taken_at=self.clock.now(),
        )

    def restore_from_snapshot(self, snapshot: Snapshot) -> None:
        """
        Adopt snapshot state and version; no events are applied

        Only valid on a bare instance. The repository follows up with
        load_from_history for the tail after snapshot.version.
        """
        if self.version != 0 or self._uncommitted:
            raise InvalidHistory(self.id, "snapshot can only be restored into a fresh instance")
        if snapshot.aggregate_id != self.id:
            raise InvalidHistory(
                self.id, f"snapshot belongs to {snapshot.aggregate_id}"
            )
        if snapshot.aggregate_type != self.aggregate_type:
            raise InvalidHistory(
                self.id,
                f"snapshot of {snapshot.aggregate_type} cannot restore {self.aggregate_type}",
            )
        self._restore_state(dict(snapshot.state))
        self.version = snapshot.version

    def _snapshot_state(self) -> dict[str, Any]:
        raise NotImplementedError(f"{type(self).__name__} does not support snapshots")

    def _restore_state(self, state: dict[str, Any]) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not support snapshots")

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} id={self.id!r} version={self.version} "
            f"uncommitted={len(self._uncommitted)}>"
        )
