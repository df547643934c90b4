"""Cooperative cancellation of a running job attempt.

Foreign code cannot be force-killed, so cancelling a running job is a
request: the coordinator trips the attempt's token and the work unit notices
it at its next ``check_cancelled()`` or progress report. A unit that never
looks runs to completion and its result is thrown away.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


class CancelledError(Exception):
    """Raised inside a work unit once its job has been cancelled.

    Unrelated to asyncio.CancelledError, which interrupts a task; this one
    is a job-level signal the coordinator turns into a discarded attempt.
    """

    def __init__(self, message: str = "Job was cancelled", *, reason: str | None = None):
        super().__init__(message)
        self.reason = reason


@dataclass
class CancellationToken:
    """Per-attempt cancellation flag.

    Usage:
        token = CancellationToken()

        # work unit
        for row in rows:
            token.raise_if_cancelled()
            handle(row)

        # coordinator, after the job was cancelled or its lease lost
        token.cancel("cancelled by client")
    """

    _tripped: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _listeners: list[Callable[[], Any]] = field(default_factory=list, init=False)
    _reason: str | None = field(default=None, init=False)

    @property
    def is_cancelled(self) -> bool:
        return self._tripped.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Trip the token. Later calls are no-ops and keep the first reason."""
        if self.is_cancelled:
            return
        self._reason = reason
        self._tripped.set()
        for listener in list(self._listeners):
            self._notify(listener)

    async def wait(self, timeout: float | None = None) -> bool:
        """Block until tripped; False if ``timeout`` passes first."""
        try:
            await asyncio.wait_for(self._tripped.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def on_cancel(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` on cancellation, or right away if already tripped."""
        self._listeners.append(callback)
        if self.is_cancelled:
            self._notify(callback)

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise CancelledError(reason=self._reason)

    @staticmethod
    def _notify(listener: Callable[[], Any]) -> None:
        try:
            listener()
        except Exception:
            logger.exception("Cancellation callback %r failed", listener)


__all__ = ["CancellationToken", "CancelledError"]
