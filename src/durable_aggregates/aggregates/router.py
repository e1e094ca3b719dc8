"""
Event Routers - dispatch an event to the code that mutates aggregate state

Two interchangeable strategies, both keyed by the event's concrete class:

- ConventionEventRouter discovers `apply_*` methods whose single
  parameter is annotated with an Event subclass. The dispatch table is
  built once per aggregate class and bound to each instance.
- RegistrationEventRouter is filled by explicit `register()` calls made
  while the aggregate is constructed.

Routing runs identically during replay and live changes, so handlers
must only touch the owning aggregate's fields.
"""

import functools
import inspect
import typing
from collections.abc import Callable
from typing import Any, Protocol

from durable_aggregates.kernel.errors import NoHandlerForEvent
from durable_aggregates.kernel.events import Event
from durable_aggregates.kernel.logging import get_logger

logger = get_logger(__name__)

ApplyHandler = Callable[[Any], None]

APPLY_PREFIX = "apply_"


class EventRouter(Protocol):
    strict: bool

    def route(self, event: Event) -> bool:
        """Apply the event; True if a handler ran, False if ignored (lenient mode)"""
        ...

    def handled_types(self) -> list[type[Event]]: ...


class _TableRouter:
    """Shared lookup semantics for both strategies"""

    def __init__(self, owner: str, strict: bool) -> None:
        self.owner = owner
        self.strict = strict
        self._handlers: dict[type[Event], ApplyHandler] = {}

    def route(self, event: Event) -> bool:
        handler = self._handlers.get(type(event))
        if handler is None:
            if self.strict:
                raise NoHandlerForEvent(self.owner, event.event_type)
            logger.debug(
                "Ignoring event without handler",
                aggregate_type=self.owner,
                event_type=event.event_type,
                version=event.version,
            )
            return False
        handler(event)
        return True

    def handled_types(self) -> list[type[Event]]:
        return list(self._handlers)


@functools.cache
def convention_table(aggregate_cls: type) -> dict[type[Event], str]:
    """
    Map event classes to `apply_*` method names for an aggregate class

    A method qualifies when it is named apply_<anything> and takes
    exactly one parameter (besides self) annotated with an Event
    subclass. Other apply_* methods are ignored.

    Raises:
        TypeError: two methods claim the same event class
    """
    table: dict[type[Event], str] = {}
    for name, func in inspect.getmembers(aggregate_cls, predicate=inspect.isfunction):
        if not name.startswith(APPLY_PREFIX):
            continue
        params = list(inspect.signature(func).parameters.values())[1:]
        if len(params) != 1:
            continue
        try:
            hints = typing.get_type_hints(func)
        except NameError:
            continue
        event_cls = hints.get(params[0].name)
        if not (isinstance(event_cls, type) and issubclass(event_cls, Event)):
            continue
        if event_cls in table:
            raise TypeError(
                f"{aggregate_cls.__name__} has two apply handlers for "
                f"{event_cls.__name__}: {table[event_cls]} and {name}"
            )
        table[event_cls] = name
    return table


class ConventionEventRouter(_TableRouter):
    """Routes to the aggregate's own `apply_<event>(self, event: EventCls)` methods"""

    @classmethod
    def for_aggregate(cls, aggregate: Any, strict: bool = True) -> "ConventionEventRouter":
        router = cls(owner=type(aggregate).__name__, strict=strict)
        for event_cls, method_name in convention_table(type(aggregate)).items():
            router._handlers[event_cls] = getattr(aggregate, method_name)
        return router


class RegistrationEventRouter(_TableRouter):
    """Routes to handlers registered explicitly during aggregate construction"""

    def __init__(self, owner: str = "aggregate", strict: bool = True) -> None:
        super().__init__(owner=owner, strict=strict)

    def register(self, event_cls: type[Event], handler: ApplyHandler) -> None:
        """
        Register the state mutator for one event class

        Raises:
            TypeError: event_cls is not an Event subclass
            ValueError: event_cls already has a handler
        """
        if not (isinstance(event_cls, type) and issubclass(event_cls, Event)):
            raise TypeError(f"{event_cls!r} is not an Event subclass")
        if event_cls in self._handlers:
            raise ValueError(
                f"{self.owner} already registered a handler for {event_cls.__name__}"
            )
        self._handlers[event_cls] = handler
