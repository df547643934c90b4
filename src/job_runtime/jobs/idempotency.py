"""
Idempotent job submission.

Clients retrying a submission (timeouts, webhook redelivery, queue replays)
pass the same idempotency key and must get back the job created by the first
attempt instead of a duplicate. The mapping lives in an IdempotencyIndex
co-located with the job store; this module adds key validation, key
derivation helpers and logging on top of it.

Key lifetime follows the job: once the job's retention window passes and the
sweeper deletes it, the key is released and may start a fresh job.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from ..errors import InvalidSubmissionError
from ..logging import get_logger
from ..telemetry import JobMetrics
from .store import IdempotencyIndex, JobFactory
from .types import JobRecord

logger = get_logger("job_runtime.idempotency")

MAX_KEY_LENGTH = 255


def derive_idempotency_key(job_type: str, payload: Any, *, namespace: str | None = None) -> str:
    """
    Compute a content-based key for callers without a natural business key.

    Two submissions of the same type with equal JSON-serializable payloads
    map to the same key.
    """
    canonical = json.dumps(
        {"type": job_type, "payload": payload, "namespace": namespace},
        sort_keys=True,
        ensure_ascii=True,
        default=str,
    )
    digest = hashlib.sha256(canonical.encode()).hexdigest()[:32]
    return f"{job_type}:{digest}"


def validate_idempotency_key(key: str) -> str:
    """Return the key unchanged or raise InvalidSubmissionError."""
    if not isinstance(key, str) or not key.strip():
        raise InvalidSubmissionError(
            "idempotency key must be a non-empty string",
            errors=[{"loc": ["idempotency_key"], "msg": "must be a non-empty string"}],
        )
    if len(key) > MAX_KEY_LENGTH:
        raise InvalidSubmissionError(
            f"idempotency key longer than {MAX_KEY_LENGTH} characters",
            errors=[{"loc": ["idempotency_key"], "msg": f"at most {MAX_KEY_LENGTH} characters"}],
        )
    if not key.isprintable():
        raise InvalidSubmissionError(
            "idempotency key contains non-printable characters",
            errors=[{"loc": ["idempotency_key"], "msg": "must be printable"}],
        )
    return key


class IdempotencyGuard:
    """
    Reserve-or-get for keyed submissions.

    Example:
        ```python
        guard = IdempotencyGuard(store)
        job, created = await guard.reserve(
            "order-123:invoice",
            lambda: new_job("invoice", payload, now=now, max_retries=3),
            now=now,
        )
        ```
    """

    def __init__(self, index: IdempotencyIndex, metrics: JobMetrics | None = None) -> None:
        self._index = index
        self._metrics = metrics or JobMetrics()

    async def reserve(self, key: str, job_factory: JobFactory, *, now: float) -> tuple[JobRecord, bool]:
        validate_idempotency_key(key)
        job, created = await self._index.reserve_or_get(key, job_factory, now=now)
        if not created:
            self._metrics.record("deduplicated", job.type)
            logger.info(
                "Duplicate submission returned existing job",
                job_id=job.job_id,
                idempotency_key=key,
                state=job.state.value,
            )
        return job, created

    async def lookup(self, key: str) -> str | None:
        return await self._index.lookup(key)

    async def release(self, job: JobRecord) -> bool:
        """Drop the key of a deleted job so it can be reused."""
        if not job.idempotency_key:
            return False
        released = await self._index.release(job.idempotency_key, job.job_id)
        if released:
            logger.debug("Released idempotency key", job_id=job.job_id, idempotency_key=job.idempotency_key)
        return released


__all__ = [
    "MAX_KEY_LENGTH",
    "IdempotencyGuard",
    "derive_idempotency_key",
    "validate_idempotency_key",
]
