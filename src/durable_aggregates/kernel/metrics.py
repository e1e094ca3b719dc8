"""
Prometheus metrics collection for Durable Aggregates.

Counts what the persistence engine does (events loaded and appended,
conflicts, snapshot use) so concurrency hot spots show up on a dashboard.
"""

import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Histogram

# ============================================================================
# Event Store Metrics
# ============================================================================

events_appended_total = Counter(
    "da_events_appended_total",
    "Total number of events appended to the event store",
    ["aggregate_type", "event_type"],
)

events_loaded_total = Counter(
    "da_events_loaded_total",
    "Total number of events replayed into aggregates",
    ["aggregate_type"],
)

# ============================================================================
# Concurrency Metrics
# ============================================================================

aggregate_conflicts_total = Counter(
    "da_aggregate_conflicts_total",
    "Saves rejected because concurrently committed events conflicted",
    ["aggregate_type"],
)

store_concurrency_conflicts_total = Counter(
    "da_store_concurrency_conflicts_total",
    "Saves rejected by the store-level expected-version check",
    ["aggregate_type"],
)

rebased_saves_total = Counter(
    "da_rebased_saves_total",
    "Saves appended after non-conflicting concurrent events",
    ["aggregate_type"],
)

# ============================================================================
# Publishing & Snapshots
# ============================================================================

publish_failures_total = Counter(
    "da_publish_failures_total",
    "Events durably appended whose publication failed",
    ["event_type"],
)

snapshots_total = Counter(
    "da_snapshots_total",
    "Snapshot operations by outcome",
    ["aggregate_type", "operation"],  # operation: hit, miss, write, error
)

# ============================================================================
# Command Processing Metrics
# ============================================================================

commands_processed_total = Counter(
    "da_commands_processed_total",
    "Total number of commands processed",
    ["command_type", "status"],  # status: success, failure
)

command_duration_seconds = Histogram(
    "da_command_duration_seconds",
    "Duration of command processing in seconds",
    ["command_type"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

save_duration_seconds = Histogram(
    "da_save_duration_seconds",
    "Duration of Repository.save in seconds",
    ["aggregate_type"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

P = ParamSpec("P")
R = TypeVar("R")


def track_command_duration(
    command_type: str,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Decorator timing an async command handler and counting its outcome"""

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start = time.perf_counter()
            status = "success"
            try:
                return await func(*args, **kwargs)
            except Exception:
                status = "failure"
                raise
            finally:
                command_duration_seconds.labels(command_type=command_type).observe(
                    time.perf_counter() - start
                )
                commands_processed_total.labels(
                    command_type=command_type, status=status
                ).inc()

        return wrapper

    return decorator