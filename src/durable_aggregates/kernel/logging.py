"""
Structured logging for Durable Aggregates.

structlog over stdlib logging. A command's correlation id lives in a
context variable: the command bus binds it for the whole dispatch, log
lines pick it up, and the repository stamps it on the events it saves.
"""

import contextvars
import logging
import os
import secrets
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

# Empty string means no command is being handled
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """
    Bind a correlation id for the duration of the block

    A fresh id is generated when none is given. The previous binding is
    restored on exit, so nested dispatches do not leak their ids.
    """
    token = correlation_id_var.set(correlation_id or secrets.token_urlsafe(16))
    try:
        yield correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)


def add_correlation_id(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor: attach the bound correlation id, if any"""
    correlation_id = correlation_id_var.get()
    if correlation_id:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def configure_logging(*, json_output: bool = False, log_level: str = "INFO") -> None:
    """
    Route structlog through stdlib logging on stderr

    Args:
        json_output: JSON lines instead of console output
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
    """
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level.upper())
    logging.getLogger().setLevel(log_level.upper())
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def is_production() -> bool:
    """True when ENVIRONMENT=production"""
    return os.getenv("ENVIRONMENT", "development").lower() == "production"


# Account holders and credentials never reach the logs
REDACTED_FIELDS = frozenset({"who", "owner", "password", "token", "secret", "api_key"})


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """
    Mask sensitive values in log context

    Example:
        >>> redact_context({"who": "alice", "aggregate_id": "acc-1"})
        {'who': '***REDACTED***', 'aggregate_id': 'acc-1'}
    """
    return {k: "***REDACTED***" if k in REDACTED_FIELDS else v for k, v in context.items()}


class LogOperation:
    """
    Time a block and log how it ended

    Exceptions listed in `expected` (conflicts the caller is about to
    retry, say) are logged as warnings; anything else is an error.
    Exceptions always propagate.
    """

    def __init__(
        self,
        logger: structlog.stdlib.BoundLogger,
        operation: str,
        expected: tuple[type[BaseException], ...] = (),
        **context: Any,
    ):
        self.logger = logger
        self.operation = operation
        self.expected = expected
        self.context = redact_context(context)
        self.start_time = 0.0

    def __enter__(self) -> "LogOperation":
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation} started", operation=self.operation, **self.context)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        fields = {
            "operation": self.operation,
            "duration_ms": round((time.perf_counter() - self.start_time) * 1000, 2),
            **self.context,
        }
        if exc_type is None:
            self.logger.info(f"{self.operation} completed", **fields)
        elif self.expected and issubclass(exc_type, self.expected):
            self.logger.warning(f"{self.operation} rejected", reason=str(exc_val), **fields)
        else:
            self.logger.error(
                f"{self.operation} failed",
                error=str(exc_val),
                exc_info=not is_production(),
                **fields,
            )
