"""
Retry policies with exponential backoff.

Two distinct uses:
- store-internal retries on SQLite lock contention (infrastructure noise)
- command-level retries on concurrency conflicts, applied by the command
  bus around a full load -> mutate -> save cycle

The repository itself never retries.
"""

import sqlite3
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from durable_aggregates.kernel.errors import (
    ConflictingCommandException,
    StoreConcurrencyException,
)
from durable_aggregates.kernel.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

CONCURRENCY_ERRORS: tuple[type[Exception], ...] = (
    ConflictingCommandException,
    StoreConcurrencyException,
)


def _log_retry(message: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        logger.warning(
            message,
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        )

    return before_sleep


def retry_on_sqlite_lock(
    max_attempts: int = 3,
    min_wait_ms: int = 50,
    max_wait_ms: int = 1000,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for SQLite lock contention (OperationalError).

    SQLite uses file-based locking and can report "database is locked"
    under concurrent writers. Only the blocking store functions use this.

    Example:
        @retry_on_sqlite_lock()
        def _append_sync(...):
            conn.execute(...)
    """
    return retry(
        retry=retry_if_exception_type(sqlite3.OperationalError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=_log_retry("SQLite lock detected, retrying"),
        reraise=True,
    )


def concurrency_retrying(
    max_attempts: int = 3,
    min_wait_ms: int = 10,
    max_wait_ms: int = 200,
    exceptions: tuple[type[Exception], ...] = CONCURRENCY_ERRORS,
) -> AsyncRetrying:
    """
    Async retry controller for commands that lost a concurrency race

    Each attempt must re-run the whole command (fresh load included).

    Example:
        async for attempt in concurrency_retrying():
            with attempt:
                await handler(command)
    """
    return AsyncRetrying(
        retry=retry_if_exception_type(exceptions),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=min_wait_ms / 1000.0 or 0.001,
            min=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=_log_retry("Concurrency conflict, retrying command"),
        reraise=True,
    )

