"""
Kernel - value model and collaborators of the aggregate persistence core

Events, commands, errors, settings, and the stores/publishers the
repository talks to.
"""

from durable_aggregates.kernel.commands import Command
from durable_aggregates.kernel.errors import (
    AggregateNotFound,
    ConflictingCommandException,
    DurableAggregatesError,
    EventPublishError,
    EventSourcingError,
    EventStoreError,
    InvalidHistory,
    InvariantViolation,
    NoHandlerForEvent,
    RaiseDuringReplay,
    SerializationError,
    StaleAggregate,
    StoreConcurrencyException,
    StreamVersionConflict,
)
from durable_aggregates.kernel.events import Event, EventTypeRegistry
from durable_aggregates.kernel.ids import generate_id, new_commit_id
from durable_aggregates.kernel.settings import EngineSettings
from durable_aggregates.kernel.time import RealTimeProvider, TestTimeProvider, TimeProvider

__all__ = [
    # IDs
    "generate_id",
    "new_commit_id",
    # Time
    "TimeProvider",
    "RealTimeProvider",
    "TestTimeProvider",
    # Events & Commands
    "Event",
    "EventTypeRegistry",
    "Command",
    # Settings
    "EngineSettings",
    # Errors
    "DurableAggregatesError",
    "InvariantViolation",
    "EventSourcingError",
    "NoHandlerForEvent",
    "InvalidHistory",
    "RaiseDuringReplay",
    "AggregateNotFound",
    "StaleAggregate",
    "ConflictingCommandException",
    "StoreConcurrencyException",
    "EventStoreError",
    "StreamVersionConflict",
    "SerializationError",
    "EventPublishError",
]
