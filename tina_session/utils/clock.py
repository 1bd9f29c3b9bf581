"""
Clock Module

Time source used by every polling loop. Production code uses SystemClock;
tests drive ManualClock so timeouts and intervals elapse without sleeping.
"""

import time
from datetime import datetime, timedelta, timezone


class Clock:
    """Monotonic time plus wall-clock time and sleep."""

    def monotonic(self) -> float:
        raise NotImplementedError

    def now(self) -> datetime:
        raise NotImplementedError

    def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class ManualClock(Clock):
    """
    Deterministic clock whose time only moves when ``sleep`` or ``advance`` is called.

    ``on_sleep`` callbacks run after each sleep with the new monotonic time,
    which lets a test mutate the world (write a status file, kill a session)
    at a chosen moment of a polling loop.
    """

    def __init__(self, start: float = 0.0, wall_start: datetime = None):
        self._now = start
        self._start = start
        self._wall_start = wall_start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.sleeps = []
        self.on_sleep = []

    def monotonic(self) -> float:
        return self._now

    def now(self) -> datetime:
        return self._wall_start + timedelta(seconds=self._now - self._start)

    def advance(self, seconds: float) -> None:
        self._now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += seconds
        for callback in list(self.on_sleep):
            callback(self._now)
