"""
Injectable time source.

All timestamps in job-runtime are epoch seconds (float). Components take a
Clock instead of calling time.time() so retention, backoff and lease expiry
can be driven deterministically.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...


class SystemClock:
    """Wall clock backed by time.time()."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to.

    Example:
        clock = ManualClock(start=1_000.0)
        clock.advance(1.1)
        assert clock.now() == 1_001.1
    """

    def __init__(self, start: float | None = None) -> None:
        self._now = time.time() if start is None else float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        self._now += seconds
        return self._now

    def set(self, value: float) -> None:
        self._now = float(value)


__all__ = ["Clock", "SystemClock", "ManualClock"]
