"""
Time provider abstraction for deterministic testing

Events carry an `occurred_at` timestamp. Making "now" injectable keeps
aggregates and handlers replayable in tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class TimeProvider(Protocol):
    """Protocol for time providers - allows deterministic testing"""

    def now(self) -> datetime:
        """Return current UTC datetime"""
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RealTimeProvider:
    """Production time provider using system clock"""

    def now(self) -> datetime:
        return utc_now()


class TestTimeProvider:
    """
    Controllable time provider for deterministic tests

    Time only moves when the test moves it.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, initial_time: datetime | None = None) -> None:
        self._current_time = initial_time or datetime(1970, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current_time

    def set_time(self, dt: datetime) -> None:
        self._current_time = dt

    def advance_seconds(self, seconds: int) -> None:
        self._current_time += timedelta(seconds=seconds)

    def advance_days(self, days: int) -> None:
        self._current_time += timedelta(days=days)


default_time_provider: TimeProvider = RealTimeProvider()
