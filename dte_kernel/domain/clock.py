"""
Clock -- injectable time source.

Responsibility:
    Services that stamp documents, check certificate validity windows,
    expire tokens or time out polling receive a Clock instead of calling
    ``datetime.now()`` themselves, so every timestamp in the pipeline is
    reproducible in tests.

Architecture position:
    Kernel > Domain.  SystemClock is the one sanctioned I/O boundary for time.
"""

import time
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        - ``now()`` returns a timezone-aware ``datetime`` in UTC.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware."""
        ...

    def today(self) -> date:
        return self.now().date()

    def monotonic(self) -> float:
        """Seconds on a monotonic scale, for timeouts."""
        return self.now().timestamp()


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class DeterministicClock(Clock):
    """
    Fixed clock for tests.

    Time only moves when ``advance()`` or ``set_time()`` is called.  Passing
    ``advance`` as a service's sleep function makes backoff and polling loops
    run instantly while still observing elapsed time.
    """

    DEFAULT_TIME = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __init__(self, fixed_time: datetime | None = None):
        self._current = fixed_time or self.DEFAULT_TIME
        if self._current.tzinfo is None:
            self._current = self._current.replace(tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        self._current = time if time.tzinfo else time.replace(tzinfo=timezone.utc)

    def advance(self, seconds: float = 1) -> None:
        self._current = self._current + timedelta(seconds=seconds)
