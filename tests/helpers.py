"""
Test helpers - small aggregates and collaborators shared across tests

Two test aggregates cover both routing strategies:
- Counter finds its apply_* handlers by convention
- Tally registers the same handlers explicitly
Both have identical behaviour, which lets tests check that the
strategies are interchangeable.
"""

from typing import Any

from durable_aggregates.aggregates.root import AggregateRoot
from durable_aggregates.aggregates.router import EventRouter, RegistrationEventRouter
from durable_aggregates.kernel.errors import InvariantViolation
from durable_aggregates.kernel.events import Event


class Incremented(Event):
    by: int = 1


class Decremented(Event):
    by: int = 1


class Labelled(Event):
    label: str


class Unhandled(Event):
    """No test aggregate handles this one"""

    note: str = ""


TEST_EVENTS = (Incremented, Decremented, Labelled, Unhandled)


class Counter(AggregateRoot):
    aggregate_type = "counter"

    def __init__(self, aggregate_id: str) -> None:
        super().__init__(aggregate_id)
        self.value = 0
        self.label = ""
        self.applied: list[str] = []

    def increment(self, by: int = 1) -> None:
        if by <= 0:
            raise InvariantViolation("increment must be positive")
        self.raise_event(Incremented(by=by))

    def decrement(self, by: int = 1) -> None:
        if self.value - by < 0:
            raise InvariantViolation("counter cannot go negative")
        self.raise_event(Decremented(by=by))

    def relabel(self, label: str) -> None:
        self.raise_event(Labelled(label=label))

    def apply_incremented(self, event: Incremented) -> None:
        self.value += event.by
        self.applied.append(event.event_type)

    def apply_decremented(self, event: Decremented) -> None:
        self.value -= event.by
        self.applied.append(event.event_type)

    def apply_labelled(self, event: Labelled) -> None:
        self.label = event.label
        self.applied.append(event.event_type)

    def _snapshot_state(self) -> dict[str, Any]:
        return {"value": self.value, "label": self.label}

    def _restore_state(self, state: dict[str, Any]) -> None:
        self.value = state["value"]
        self.label = state["label"]

    def state(self) -> dict[str, Any]:
        return {"value": self.value, "label": self.label, "version": self.version}


class LenientCounter(Counter):
    aggregate_type = "lenient-counter"
    strict_routing = False


class Tally(AggregateRoot):
    """Counter twin using explicit handler registration"""

    aggregate_type = "tally"

    def __init__(self, aggregate_id: str) -> None:
        self.value = 0
        self.label = ""
        self.applied: list[str] = []
        super().__init__(aggregate_id)

    def _build_router(self) -> EventRouter:
        router = RegistrationEventRouter(owner="Tally", strict=self.strict)
        router.register(Incremented, self._on_incremented)
        router.register(Decremented, self._on_decremented)
        router.register(Labelled, self._on_labelled)
        return router

    def increment(self, by: int = 1) -> None:
        self.raise_event(Incremented(by=by))

    def _on_incremented(self, event: Incremented) -> None:
        self.value += event.by
        self.applied.append(event.event_type)

    def _on_decremented(self, event: Decremented) -> None:
        self.value -= event.by
        self.applied.append(event.event_type)

    def _on_labelled(self, event: Labelled) -> None:
        self.label = event.label
        self.applied.append(event.event_type)

    def state(self) -> dict[str, Any]:
        return {"value": self.value, "label": self.label, "version": self.version}


def stored_events(
    aggregate_id: str,
    events: list[Event],
    *,
    start_version: int = 1,
    commit_id: str = "commit-0",
    aggregate_type: str = "counter",
) -> list[Event]:
    """
    Position events as if they had been stored in a stream

    Example:
        >>> stored_events("c-1", [Incremented(by=2), Labelled(label="x")])
        # -> versions 1 and 2 of stream c-1
    """
    return [
        event.positioned(aggregate_id, aggregate_type, start_version + offset).stamped(commit_id)
        for offset, event in enumerate(events)
    ]


class RecordingPublisher:
    """Publisher double that records every event and can be told to fail"""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.published: list[Event] = []
        self.fail_with = fail_with

    async def publish(self, event: Event) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.published.append(event)


class CountingEventStore:
    """Wraps a store and counts read calls / events returned"""

    def __init__(self, inner: Any) -> None:
        self.inner = inner
        self.events_read = 0
        self.calls: list[str] = []

    async def append(self, aggregate_id, expected_version, events):
        return await self.inner.append(aggregate_id, expected_version, events)

    async def read_all(self, aggregate_id):
        return self._count("read_all", await self.inner.read_all(aggregate_id))

    async def read_up_to(self, aggregate_id, version):
        return self._count("read_up_to", await self.inner.read_up_to(aggregate_id, version))

    async def read_since(self, aggregate_id, version):
        return self._count("read_since", await self.inner.read_since(aggregate_id, version))

    async def get_stream_version(self, aggregate_id):
        return await self.inner.get_stream_version(aggregate_id)

    def _count(self, call: str, events: list[Event]) -> list[Event]:
        self.calls.append(call)
        self.events_read += len(events)
        return events
