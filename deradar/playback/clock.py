"""
Clocks for the auto-advance loop.

WallClock sleeps for real. SimClock advances simulated time on every sleep
and returns immediately, so headless replays and tests run without waiting.

Usage:
    clock = SimClock(start=datetime(2025, 1, 1, tzinfo=timezone.utc))
    await clock.sleep(0.75)     # returns at once, clock.now() moved 750ms
    clock.sleeps                # [0.75]
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional


class WallClock:
    """Real time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class SimClock:
    """Deterministic simulated clock.

    Safe within a single asyncio loop (no threading).
    """

    def __init__(
        self,
        start: Optional[datetime] = None,
        *,
        step_callback: Optional[Callable[["SimClock", float], None]] = None,
    ):
        """
        Args:
            start: Initial simulated time (must be timezone-aware). Defaults to now.
            step_callback: Optional callback(clock, requested_seconds) called on each sleep.
        """
        start = start or datetime.now(timezone.utc)
        if start.tzinfo is None:
            raise ValueError("SimClock start must be timezone-aware")
        self._current: datetime = start
        self._start: datetime = start
        self._step_callback = step_callback
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._current

    def monotonic(self) -> float:
        """Elapsed simulated seconds since clock start."""
        return (self._current - self._start).total_seconds()

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("Cannot advance by negative delta")
        self._current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        """Replacement for asyncio.sleep(): advances time, then yields once."""
        self.sleeps.append(seconds)
        self.advance(seconds)
        if self._step_callback:
            self._step_callback(self, seconds)
        # Yield control to event loop to allow task switching
        await asyncio.sleep(0)

    @property
    def elapsed(self) -> timedelta:
        return self._current - self._start

    @property
    def stats(self) -> dict:
        return {
            "start": self._start.isoformat(),
            "current": self._current.isoformat(),
            "elapsed_seconds": self.elapsed.total_seconds(),
            "total_sleeps": len(self.sleeps),
            "total_sleep_seconds": sum(self.sleeps),
        }

    def __repr__(self) -> str:
        return f"SimClock(now={self._current.isoformat()}, elapsed={self.elapsed})"
