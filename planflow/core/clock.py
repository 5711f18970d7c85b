"""Injectable clocks.

Retry and velocity logic never read wall-clock time directly. They ask a
``Clock`` for ``now()`` and suspend through ``sleep()``, so tests can drive
time with ``ManualClock`` instead of real sleeps.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Time source used by the orchestration components."""

    def now(self) -> datetime:
        """Return the current time."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend for the given number of seconds."""
        ...


class SystemClock:
    """Clock backed by ``datetime.now`` and ``asyncio.sleep``."""

    def now(self) -> datetime:
        """Return the current local time."""
        return datetime.now()

    async def sleep(self, seconds: float) -> None:
        """Sleep cooperatively."""
        if seconds > 0:
            await asyncio.sleep(seconds)


class ManualClock:
    """Deterministic clock for tests.

    ``sleep`` advances the clock instead of waiting, and records every
    requested delay in ``sleeps``.

    Example:
        >>> clock = ManualClock(datetime(2024, 1, 1))
        >>> clock.advance(90)
        >>> clock.now()
        datetime.datetime(2024, 1, 1, 0, 1, 30)
    """

    def __init__(self, start: datetime | None = None) -> None:
        """Initialize ManualClock.

        Args:
            start: Initial time. Defaults to 2024-01-01 00:00.
        """
        self._now = start or datetime(2024, 1, 1)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        """Return the simulated time."""
        return self._now

    def advance(self, seconds: float) -> None:
        """Move the clock forward.

        Args:
            seconds: Seconds to advance. Negative values are ignored.
        """
        if seconds > 0:
            self._now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        """Advance instead of waiting, then yield to the event loop."""
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


async def sleep_until(clock: Clock, when: datetime | None) -> None:
    """Suspend until ``when`` according to ``clock``.

    Args:
        clock: Time source.
        when: Target time. ``None`` or a past time returns immediately.
    """
    if when is None:
        return
    remaining = (when - clock.now()).total_seconds()
    if remaining > 0:
        await clock.sleep(remaining)
