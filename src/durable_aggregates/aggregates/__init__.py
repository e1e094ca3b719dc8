"""
Aggregates - the event-sourced persistence core

Routers apply events to state, aggregate roots track what they raised,
the conflict detector judges concurrent commits, and the repository
ties load and save together.
"""

from durable_aggregates.aggregates.conflicts import (
    ConflictDetector,
    always_conflicts,
    never_conflicts,
    same_type_conflicts,
)
from durable_aggregates.aggregates.repository import Repository
from durable_aggregates.aggregates.root import AggregateRoot
from durable_aggregates.aggregates.router import (
    ConventionEventRouter,
    EventRouter,
    RegistrationEventRouter,
)

__all__ = [
    "AggregateRoot",
    "ConflictDetector",
    "ConventionEventRouter",
    "EventRouter",
    "RegistrationEventRouter",
    "Repository",
    "always_conflicts",
    "never_conflicts",
    "same_type_conflicts",
]
