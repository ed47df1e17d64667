"""
Time Sources for Accrual Math

All accrual arithmetic runs on integer seconds. A clock must never go
backwards: settlement computes `now - last_settled` and a negative interval
would silently subtract earnings.
"""

from abc import ABC, abstractmethod
from threading import Lock
import time


class Clock(ABC):
    """Supplies the current time as integer seconds."""

    @abstractmethod
    def now(self) -> int:
        ...


class SystemClock(Clock):
    """
    Wall-clock seconds, clamped so that readings are non-decreasing even if
    the host clock is stepped backwards.
    """

    def __init__(self):
        self._last = 0
        self._lock = Lock()

    def now(self) -> int:
        with self._lock:
            current = int(time.time())
            if current > self._last:
                self._last = current
            return self._last


class ManualClock(Clock):
    """Clock driven explicitly by the caller. Used by tests and replays."""

    def __init__(self, start: int = 0):
        if start < 0:
            raise ValueError("start must be non-negative")
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        """Move forward by `seconds` and return the new time."""
        if seconds < 0:
            raise ValueError("clock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, timestamp: int) -> None:
        if timestamp < self._now:
            raise ValueError(f"clock cannot move backwards ({timestamp} < {self._now})")
        self._now = timestamp
