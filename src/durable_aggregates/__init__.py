"""
Durable Aggregates - event-sourced aggregate persistence

Aggregates rebuild their state from an event stream, track the events
they raise, and are saved through a repository that detects conflicting
concurrent commits before an atomic compare-and-append.

Fun fact: Double-entry bookkeeping, the original append-only ledger,
was codified by Luca Pacioli in 1494.
"""

from durable_aggregates.aggregates import (
    AggregateRoot,
    ConflictDetector,
    ConventionEventRouter,
    RegistrationEventRouter,
    Repository,
)
from durable_aggregates.kernel import Command, EngineSettings, Event, EventTypeRegistry

__version__ = "0.1.0"
__all__ = [
    "AggregateRoot",
    "Command",
    "ConflictDetector",
    "ConventionEventRouter",
    "EngineSettings",
    "Event",
    "EventTypeRegistry",
    "RegistrationEventRouter",
    "Repository",
    "__version__",
]
