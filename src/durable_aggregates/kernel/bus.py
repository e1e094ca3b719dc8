"""
In-process Command Bus and Event Publisher

The publisher is the repository's notification collaborator: once events
are durable, each one is handed to every subscriber. The command bus sits
one layer above the repository and owns the retry policy for commands
that lost a concurrency race.

Fun fact: This is a "mediator" pattern - it decouples command senders
from handlers. Swapping it for Kafka or NATS later doesn't touch the
aggregates at all!
"""

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from durable_aggregates.kernel.commands import Command
from durable_aggregates.kernel.errors import CommandHandlerNotFound, EventPublishError
from durable_aggregates.kernel.events import Event
from durable_aggregates.kernel.logging import LogOperation, correlation_scope, get_logger
from durable_aggregates.kernel.metrics import track_command_duration
from durable_aggregates.kernel.retry import CONCURRENCY_ERRORS, concurrency_retrying
from durable_aggregates.kernel.settings import EngineSettings

logger = get_logger(__name__)

CommandHandler = Callable[[Command], Awaitable[Any]]
EventHandler = Callable[[Event], Awaitable[None] | None]

ALL_EVENTS = "*"


class EventPublisher(Protocol):
    """Collaborator contract: deliver one durable event to subscribers"""

    async def publish(self, event: Event) -> None: ...


class InProcessEventPublisher:
    """
    Synchronous-order pub/sub within a single process

    Handlers may be plain functions or coroutines. Subscribers of
    ALL_EVENTS ("*") see every event. A failing handler does not stop the
    others; failures are collected and raised together as EventPublishError
    after every handler had its turn.
    """

    def __init__(self) -> None:
        self._handlers: defaultdict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str | type[Event], handler: EventHandler) -> None:
        key = event_type if isinstance(event_type, str) else event_type.__name__
        self._handlers[key].append(handler)
        logger.debug(
            "Event handler registered",
            event_type=key,
            total_handlers=len(self._handlers[key]),
        )

    def subscribers(self, event_type: str) -> list[EventHandler]:
        return self._handlers.get(event_type, []) + self._handlers.get(ALL_EVENTS, [])

    async def publish(self, event: Event) -> None:
        handlers = self.subscribers(event.event_type)
        if not handlers:
            logger.debug(
                "No handlers registered for event type",
                event_type=event.event_type,
                event_id=event.event_id,
            )
            return

        failures: list[str] = []
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_type=event.event_type,
                    event_id=event.event_id,
                    aggregate_id=event.aggregate_id,
                    error=str(e),
                    exc_info=True,
                )
                failures.append(f"{getattr(handler, '__name__', repr(handler))}: {e}")

        if failures:
            raise EventPublishError(event.event_type, event.event_id, failures)

    def clear(self) -> None:
        self._handlers.clear()


class CommandBus:
    """
    Routes commands to exactly one async handler each

    Dispatch wraps the handler in a correlation scope, a timeout, and a
    retry loop for ConflictingCommandException / StoreConcurrencyException.
    Each retry re-invokes the handler from scratch, so handlers must load
    the aggregate themselves (never reuse one from a failed attempt).
    """

    def __init__(self, settings: EngineSettings | None = None) -> None:
        self.settings = settings or EngineSettings()
        self._command_handlers: dict[str, CommandHandler] = {}

    def register_command_handler(
        self, command_type: str | type[Command], handler: CommandHandler
    ) -> None:
        """
        Register the handler for a command type

        Raises:
            ValueError: If a handler is already registered for this type
        """
        key = command_type if isinstance(command_type, str) else command_type.__name__
        if key in self._command_handlers:
            logger.error(
                "Command handler registration failed - already exists",
                command_type=key,
            )
            raise ValueError(f"Command handler already registered for {key}")
        self._command_handlers[key] = handler
        logger.debug("Command handler registered", command_type=key)

    def get_command_types(self) -> list[str]:
        return list(self._command_handlers.keys())

    async def dispatch(self, command: Command) -> Any:
        """
        Dispatch a command to its handler

        Returns:
            Whatever the handler returns

        Raises:
            CommandHandlerNotFound: No handler for the command type
            asyncio.TimeoutError: Dispatch exceeded command_timeout_seconds
            ConflictingCommandException / StoreConcurrencyException:
                still conflicting after the last retry
        """
        handler = self._command_handlers.get(command.command_type)
        if handler is None:
            raise CommandHandlerNotFound(command.command_type, self.get_command_types())

        with correlation_scope(command.user_properties.get("correlation_id")):
            with LogOperation(
                logger,
                "dispatch_command",
                expected=CONCURRENCY_ERRORS,
                command_type=command.command_type,
                command_id=command.command_id,
                aggregate_id=command.aggregate_id,
                who=command.who,
            ):
                timed = track_command_duration(command.command_type)(self._run_with_retry)
                return await asyncio.wait_for(
                    timed(handler, command),
                    timeout=self.settings.command_timeout_seconds,
                )

    async def _run_with_retry(self, handler: CommandHandler, command: Command) -> Any:
        settings = self.settings
        async for attempt in concurrency_retrying(
            max_attempts=settings.command_retry_attempts,
            min_wait_ms=settings.retry_min_wait_ms,
            max_wait_ms=settings.retry_max_wait_ms,
        ):
            with attempt:
                return await handler(command)
