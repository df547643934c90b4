"""
Resilience primitives (retry backoff).
"""
from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential backoff: ``min(base_delay * 2**retry_count, max_delay)``.

    ``jitter`` is a fraction (0.0-1.0) of the computed delay subtracted at
    random so that a burst of failures does not requeue in lockstep.
    """

    base_delay: float = 1.0
    max_delay: float = 300.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay cannot be negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0.0 and 1.0")

    def delay(self, retry_count: int) -> float:
        if retry_count < 0:
            raise ValueError("retry_count cannot be negative")
        # 2**n overflows float conversion long before it matters; cap the exponent.
        exponent = min(retry_count, 62)
        delay = min(self.base_delay * (2 ** exponent), self.max_delay)
        if self.jitter:
            delay -= delay * self.jitter * random.random()
        return delay


__all__ = ["BackoffPolicy"]
