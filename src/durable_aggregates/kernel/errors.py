"""
Custom exceptions for Durable Aggregates

Well-defined error hierarchy enables precise error handling: callers can
tell a retryable concurrency loss from a corrupted stream or a plain
programming mistake without parsing messages.

Fun fact: The first computer bug was an actual moth found in a relay
of the Harvard Mark II computer in 1947. Ours are mostly out-of-order events.
"""


class DurableAggregatesError(Exception):
    """Base exception for all Durable Aggregates errors"""

    pass


class InvariantViolation(DurableAggregatesError):
    """
    Raised when a business method refuses a state change

    Invariants are checked before an event is raised. Once raised, an
    event is a fact, so this error never reaches the event store.
    """

    pass


# Core (aggregate / repository) errors


class EventSourcingError(DurableAggregatesError):
    """Base class for failures of the aggregate persistence core"""

    pass


class NoHandlerForEvent(EventSourcingError):
    """
    Raised by a strict router when an event type has no apply handler

    Indicates a programming or schema-evolution gap: dropping the event
    silently would make in-memory state diverge from the stream.
    """

    def __init__(self, aggregate_type: str, event_type: str) -> None:
        self.aggregate_type = aggregate_type
        self.event_type = event_type
        super().__init__(
            f"Aggregate {aggregate_type} has no handler for event {event_type}"
        )


class InvalidHistory(EventSourcingError):
    """
    Raised when a replayed stream is out of order or belongs to another aggregate

    Should never happen with a correct store - treat as a consistency bug.
    """

    def __init__(self, aggregate_id: str, reason: str) -> None:
        self.aggregate_id = aggregate_id
        self.reason = reason
        super().__init__(f"Invalid history for aggregate {aggregate_id}: {reason}")


class RaiseDuringReplay(EventSourcingError):
    """Raised when an apply handler tries to raise a new event while replaying"""

    def __init__(self, aggregate_id: str, event_type: str) -> None:
        self.aggregate_id = aggregate_id
        self.event_type = event_type
        super().__init__(
            f"Cannot raise {event_type} on aggregate {aggregate_id} while replaying history"
        )


class AggregateNotFound(EventSourcingError):
    """Raised when an aggregate stream has no events"""

    def __init__(self, aggregate_id: str) -> None:
        self.aggregate_id = aggregate_id
        super().__init__(f"Aggregate {aggregate_id} not found")


class StaleAggregate(EventSourcingError):
    """
    Raised when a stale instance is asked to raise or save more events

    Its last save was appended after other writers' events, so its state
    no longer matches the stream. Load the aggregate again to continue.
    """

    def __init__(self, aggregate_id: str, version: int) -> None:
        self.aggregate_id = aggregate_id
        self.version = version
        super().__init__(
            f"Aggregate {aggregate_id} (in-memory version {version}) is stale; "
            f"reload it before raising or saving events"
        )


class ConflictingCommandException(EventSourcingError):
    """
    Raised when events committed by another writer conflict with ours

    Expected and recoverable: the command layer reloads the aggregate
    and re-runs the command.
    """

    def __init__(
        self, aggregate_id: str, uncommitted_type: str, committed_type: str
    ) -> None:
        self.aggregate_id = aggregate_id
        self.uncommitted_type = uncommitted_type
        self.committed_type = committed_type
        super().__init__(
            f"Aggregate {aggregate_id}: uncommitted {uncommitted_type} conflicts "
            f"with concurrently committed {committed_type}"
        )


class StoreConcurrencyException(EventSourcingError):
    """
    Raised when the store-level expected-version check fails during save

    The domain-level check passed but another writer won the append race.
    Callers retry exactly as they would for ConflictingCommandException.
    """

    def __init__(
        self, aggregate_id: str, expected_version: int, actual_version: int
    ) -> None:
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Aggregate {aggregate_id} was modified concurrently: "
            f"expected stream version {expected_version}, found {actual_version}"
        )


# Collaborator errors


class EventStoreError(DurableAggregatesError):
    """Base class for event store errors"""

    pass


class StreamVersionConflict(EventStoreError):
    """
    Raised when stream version doesn't match expected (optimistic locking)

    Indicates concurrent modification - caller should reload and retry.
    """

    def __init__(
        self, stream_id: str, expected_version: int, actual_version: int
    ) -> None:
        self.stream_id = stream_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Stream {stream_id} version mismatch: "
            f"expected {expected_version}, got {actual_version}"
        )


class SerializationError(EventStoreError):
    """Raised when an event or snapshot cannot be encoded or decoded"""

    pass


class EventPublishError(DurableAggregatesError):
    """Raised by a publisher when one or more subscribers failed"""

    def __init__(self, event_type: str, event_id: str, failures: list[str]) -> None:
        self.event_type = event_type
        self.event_id = event_id
        self.failures = failures
        super().__init__(
            f"Publishing {event_type} ({event_id}) failed in "
            f"{len(failures)} handler(s): {'; '.join(failures)}"
        )


class CommandHandlerNotFound(DurableAggregatesError):
    """Raised when no handler is registered for a command type"""

    def __init__(self, command_type: str, available: list[str]) -> None:
        self.command_type = command_type
        self.available = available
        super().__init__(
            f"No handler registered for command type '{command_type}'. "
            f"Available handlers: {available}"
        )
