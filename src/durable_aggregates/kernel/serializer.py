"""
Event serializer - bytes in, typed events out

Consumed by store implementations, never by aggregates or the
repository. The JSON document keeps the envelope and the domain
payload apart so stored rows stay readable:

    {"event_type": "FundsDeposited", "envelope": {...}, "payload": {...}}
"""

import json
from typing import Any, Protocol

from pydantic import ValidationError

from durable_aggregates.kernel.errors import SerializationError
from durable_aggregates.kernel.events import ENVELOPE_FIELDS, Event, EventTypeRegistry


class EventSerializer(Protocol):
    """Protocol for event (de)serialization used by stores"""

    def serialize(self, event: Event) -> bytes: ...

    def deserialize(self, data: bytes) -> Event: ...

    def serialize_state(self, state: dict[str, Any]) -> bytes: ...

    def deserialize_state(self, data: bytes) -> dict[str, Any]: ...


class JsonEventSerializer:
    """
    JSON serializer resolving concrete event classes through a registry

    Raises:
        SerializationError: unknown event type, malformed document, or
            a payload that no longer validates against its class
    """

    def __init__(self, registry: EventTypeRegistry) -> None:
        self.registry = registry

    def serialize(self, event: Event) -> bytes:
        if event.event_type not in self.registry:
            raise SerializationError(
                f"Event type '{event.event_type}' is not registered for serialization"
            )
        envelope = event.model_dump(mode="json", include=set(ENVELOPE_FIELDS))
        document = {
            "event_type": event.event_type,
            "envelope": envelope,
            "payload": event.payload,
        }
        return json.dumps(document, sort_keys=True).encode("utf-8")

    def deserialize(self, data: bytes) -> Event:
        try:
            document = json.loads(data)
            event_type = document["event_type"]
            fields = {**document["payload"], **document["envelope"]}
        except (ValueError, KeyError, TypeError) as e:
            raise SerializationError(f"Malformed event document: {e}") from e

        event_cls = self.registry.get(event_type)
        if event_cls is None:
            raise SerializationError(f"Unknown event type '{event_type}'")

        try:
            return event_cls.model_validate(fields)
        except ValidationError as e:
            raise SerializationError(
                f"Stored {event_type} does not match its current schema: {e}"
            ) from e

    def serialize_state(self, state: dict[str, Any]) -> bytes:
        try:
            return json.dumps(state, sort_keys=True).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Snapshot state is not JSON-serializable: {e}") from e

    def deserialize_state(self, data: bytes) -> dict[str, Any]:
        try:
            state = json.loads(data)
        except ValueError as e:
            raise SerializationError(f"Malformed snapshot state: {e}") from e
        if not isinstance(state, dict):
            raise SerializationError("Snapshot state must be a JSON object")
        return state
