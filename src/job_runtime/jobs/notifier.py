"""
Wakeup signals for idle coordinators.

Coordinators poll the store on a fixed interval; a notifier lets submission
and retry paths cut that wait short. Notifications are hints only: a missed
one costs at most one ``poll_interval`` of latency, never correctness.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod


class JobNotifier(ABC):
    """Signal that new work may be claimable."""

    @abstractmethod
    async def notify(self, job_type: str | None = None) -> None:
        """Wake up waiting coordinators."""
        ...

    @abstractmethod
    async def wait(self, timeout: float) -> bool:
        """Wait for a notification.

        Returns:
            True if woken by a notification, False on timeout
        """
        ...

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


class InMemoryNotifier(JobNotifier):
    """Single-process notifier built on asyncio.Event.

    Each waiter gets its own event so one notification wakes every idle
    worker, not just the first one scheduled.
    """

    def __init__(self) -> None:
        self._waiters: set[asyncio.Event] = set()
        self._pending = False

    async def notify(self, job_type: str | None = None) -> None:
        if not self._waiters:
            # Remembered for the next waiter so a notify racing a wait is not lost.
            self._pending = True
            return
        for event in self._waiters:
            event.set()

    async def wait(self, timeout: float) -> bool:
        if self._pending:
            self._pending = False
            return True
        event = asyncio.Event()
        self._waiters.add(event)
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            self._waiters.discard(event)


__all__ = ["JobNotifier", "InMemoryNotifier"]
