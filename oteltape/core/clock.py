"""
Clock abstraction for pacing and scheduled tasks.

The replay pacer and the retention scheduler never call ``asyncio.sleep``
or read the system time directly; they go through a ``Clock`` so tests
can advance virtual time instead of sleeping.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Monotonic time source plus wall-clock time."""

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds from an arbitrary origin, never going backwards"""

    @abstractmethod
    def now(self) -> datetime:
        """Current UTC wall-clock time"""

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task"""

    def time_ns(self) -> int:
        return int(self.now().timestamp() * 1_000_000_000)


class SystemClock(Clock):
    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class VirtualClock(Clock):
    """
    Clock whose time only moves when someone sleeps or calls ``advance``.

    Sleeping yields control to the event loop once so cancellation and
    other tasks still behave as with a real clock. Every requested sleep
    is recorded in ``sleeps``.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._start = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self._elapsed

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def advance(self, seconds: float) -> None:
        self._elapsed += max(0.0, seconds)

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)
