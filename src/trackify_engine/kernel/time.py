"""
Injectable clock

Approval deadlines are instants; budget periods are calendar dates taken
in UTC. Both come from one TimeProvider so tests can move time past a
deadline or a period end instead of sleeping.
"""

import threading
from datetime import date, datetime, timedelta, timezone
from typing import Protocol


class TimeProvider(Protocol):
    def now(self) -> datetime:
        """Current time, timezone-aware UTC"""
        ...


class RealTimeProvider:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def today(time_provider: TimeProvider) -> date:
    """UTC calendar date used for budget periods"""
    return time_provider.now().astimezone(timezone.utc).date()


class TestTimeProvider:
    """
    Frozen clock that only moves when a test advances it

    Scanner worker threads read it while the test thread advances it,
    so reads and writes share a lock.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, initial_time: datetime) -> None:
        if initial_time.tzinfo is None:
            raise ValueError("TestTimeProvider needs a timezone-aware start time")
        self._current_time = initial_time
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current_time

    def advance_hours(self, hours: float) -> None:
        with self._lock:
            self._current_time += timedelta(hours=hours)
