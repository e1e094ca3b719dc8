"""
Base Event model for event sourcing

Events are immutable facts about what happened to an aggregate. Every
domain event subclasses `Event`, adding its own typed fields on top of
the shared envelope (identity, stream position, causation metadata).

Fun fact: In event sourcing, the event log is like a time machine -
you can replay history to any point and see exactly what the
aggregate looked like at that moment!
"""

from datetime import datetime
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, model_validator

from durable_aggregates.kernel.ids import generate_id
from durable_aggregates.kernel.time import utc_now

ENVELOPE_FIELDS = frozenset(
    {
        "event_id",
        "aggregate_id",
        "aggregate_type",
        "event_type",
        "version",
        "occurred_at",
        "who",
        "commit_id",
        "correlation_id",
    }
)


class Event(BaseModel):
    """
    Base event class - all domain events inherit from this

    Events are:
    - Immutable (frozen once constructed)
    - Positioned (version is the 1-based index within the aggregate's stream)
    - Attributed (who did it, which commit caused it)

    A freshly constructed event has version 0 and no aggregate id; the
    aggregate stamps both when the event is raised. The commit id is
    stamped by the repository when the batch is saved.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(
        default_factory=generate_id,
        description="Unique event identifier (time-ordered)",
    )

    aggregate_id: str = Field(
        default="",
        description="Identifier of the aggregate whose stream holds this event",
    )

    aggregate_type: str = Field(
        default="",
        description="Kind of aggregate: 'account', 'order', ...",
    )

    event_type: str = Field(
        default="",
        description="Concrete event type name (defaults to the class name)",
    )

    version: int = Field(
        default=0,
        ge=0,
        description="Stream version of this event (0 until positioned)",
    )

    occurred_at: datetime = Field(
        default_factory=utc_now,
        description="UTC timestamp when the event occurred",
    )

    who: str | None = Field(
        default=None,
        description="Actor who caused the event (None for system events)",
    )

    commit_id: str = Field(
        default="",
        description="Commit (causation) id of the command that produced the event",
    )

    correlation_id: str | None = Field(
        default=None,
        description="Correlation id shared by everything one request caused",
    )

    @model_validator(mode="before")
    @classmethod
    def _default_event_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("event_type"):
            data = {**data, "event_type": cls.__name__}
        return data

    @property
    def payload(self) -> dict[str, Any]:
        """Domain fields of the event (everything except the envelope)"""
        return self.model_dump(mode="json", exclude=set(ENVELOPE_FIELDS))

    def positioned(self, aggregate_id: str, aggregate_type: str, version: int) -> "Event":
        """Return a copy placed at `version` in the given aggregate's stream"""
        return self.model_copy(
            update={
                "aggregate_id": aggregate_id,
                "aggregate_type": aggregate_type,
                "version": version,
            }
        )

    def stamped(
        self,
        commit_id: str,
        who: str | None = None,
        correlation_id: str | None = None,
    ) -> "Event":
        """Return a copy carrying commit metadata, keeping values already set"""
        update: dict[str, Any] = {}
        if not self.commit_id:
            update["commit_id"] = commit_id
        if who is not None and self.who is None:
            update["who"] = who
        if correlation_id is not None and self.correlation_id is None:
            update["correlation_id"] = correlation_id
        return self.model_copy(update=update) if update else self


class EventTypeRegistry:
    """
    Explicit mapping from event type names to event classes

    Owned by whoever bootstraps the process and passed to the serializer.
    There is no module-level default registry.
    """

    def __init__(self, event_classes: Iterable[type[Event]] = ()) -> None:
        self._types: dict[str, type[Event]] = {}
        for event_cls in event_classes:
            self.register(event_cls)

    def register(self, event_cls: type[Event]) -> type[Event]:
        """
        Register an event class under its class name

        Usable as a class decorator. Re-registering the same class is a
        no-op; a different class with the same name is rejected.
        """
        if not (isinstance(event_cls, type) and issubclass(event_cls, Event)):
            raise TypeError(f"{event_cls!r} is not an Event subclass")
        name = event_cls.__name__
        existing = self._types.get(name)
        if existing is not None and existing is not event_cls:
            raise ValueError(
                f"Event type '{name}' already registered to {existing.__module__}.{existing.__qualname__}"
            )
        self._types[name] = event_cls
        return event_cls

    def get(self, event_type: str) -> type[Event] | None:
        return self._types.get(event_type)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._types

    def __len__(self) -> int:
        return len(self._types)

    def names(self) -> list[str]:
        return sorted(self._types)
