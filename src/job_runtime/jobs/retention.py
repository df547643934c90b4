"""
Retention policy for terminal jobs.

How long a finished job (and its output) stays queryable depends on how it
ended and how large its result is. The policy is a table keyed by
``(outcome, size_class)`` with optional per-job-type overrides:

    policy = RetentionPolicy.from_dict({
        "default": {"completed": {"small": 86400, "large": 3600}},
        "types": {"report-generation": {"completed": {"small": 604800}}},
    })
    policy.retention_for(job, JobState.COMPLETED)
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import InvalidConfigError
from .types import JobRecord, JobState, encode_payload


class SizeClass(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


RETAINED_OUTCOMES = (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)

HOUR = 3600.0

DEFAULT_RETENTION_TABLE: dict[str, dict[str, float]] = {
    # Small results are cheap to keep around for the full polling window.
    JobState.COMPLETED.value: {
        SizeClass.SMALL.value: 24 * HOUR,
        SizeClass.MEDIUM.value: 6 * HOUR,
        SizeClass.LARGE.value: 1 * HOUR,
    },
    # Fixed diagnostic window regardless of size.
    JobState.FAILED.value: {
        SizeClass.SMALL.value: 72 * HOUR,
        SizeClass.MEDIUM.value: 72 * HOUR,
        SizeClass.LARGE.value: 72 * HOUR,
    },
    JobState.CANCELLED.value: {
        SizeClass.SMALL.value: 1 * HOUR,
        SizeClass.MEDIUM.value: 1 * HOUR,
        SizeClass.LARGE.value: 1 * HOUR,
    },
}


def payload_size(value: Any) -> int:
    """Approximate serialized size of an opaque payload in bytes."""
    if value is None:
        return 0
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    try:
        return len(json.dumps(encode_payload(value), default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return len(repr(value).encode("utf-8"))


@dataclass
class RetentionPolicy:
    """Maps a terminal job to its retention duration in seconds."""

    table: dict[str, dict[str, float]] = field(
        default_factory=lambda: copy.deepcopy(DEFAULT_RETENTION_TABLE)
    )
    type_overrides: dict[str, dict[str, dict[str, float]]] = field(default_factory=dict)
    small_max_bytes: int = 64 * 1024
    medium_max_bytes: int = 1024 * 1024

    def __post_init__(self) -> None:
        if self.small_max_bytes <= 0:
            raise InvalidConfigError("small_max_bytes must be positive")
        if self.medium_max_bytes < self.small_max_bytes:
            raise InvalidConfigError("medium_max_bytes must be >= small_max_bytes")
        for outcome in RETAINED_OUTCOMES:
            row = self.table.get(outcome.value)
            if row is None:
                raise InvalidConfigError(f"retention table missing outcome {outcome.value!r}")
            for size in SizeClass:
                if size.value not in row:
                    raise InvalidConfigError(
                        f"retention table missing {outcome.value}/{size.value}"
                    )
        for scope in [self.table, *self.type_overrides.values()]:
            for outcome, row in scope.items():
                for size, seconds in row.items():
                    if seconds < 0:
                        raise InvalidConfigError(
                            f"retention for {outcome}/{size} cannot be negative"
                        )

    def size_class(self, value: Any) -> SizeClass:
        size = payload_size(value)
        if size <= self.small_max_bytes:
            return SizeClass.SMALL
        if size <= self.medium_max_bytes:
            return SizeClass.MEDIUM
        return SizeClass.LARGE

    def retention_for(self, job: JobRecord, outcome: JobState, output: Any = None) -> float:
        """Retention window for ``job`` entering ``outcome``.

        ``output`` is the result being stored (completed jobs); other
        outcomes classify as small.
        """
        if outcome not in RETAINED_OUTCOMES:
            raise ValueError(f"no retention for non-terminal outcome {outcome.value}")
        size = self.size_class(output).value
        override = self.type_overrides.get(job.type, {}).get(outcome.value, {})
        if size in override:
            return float(override[size])
        return float(self.table[outcome.value][size])

    def expires_at(self, job: JobRecord, outcome: JobState, terminal_at: float, output: Any = None) -> float:
        return terminal_at + self.retention_for(job, outcome, output)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RetentionPolicy:
        """Build a policy from configuration, merging onto the defaults."""
        data = data or {}
        table = copy.deepcopy(DEFAULT_RETENTION_TABLE)
        for outcome, row in (data.get("default") or {}).items():
            if outcome not in table:
                raise InvalidConfigError(f"unknown retention outcome {outcome!r}")
            for size, seconds in row.items():
                _check_size(size)
                table[outcome][size] = float(seconds)

        overrides: dict[str, dict[str, dict[str, float]]] = {}
        for job_type, outcomes in (data.get("types") or {}).items():
            for outcome, row in outcomes.items():
                if outcome not in table:
                    raise InvalidConfigError(f"unknown retention outcome {outcome!r}")
                for size, seconds in row.items():
                    _check_size(size)
                    overrides.setdefault(job_type, {}).setdefault(outcome, {})[size] = float(seconds)

        kwargs: dict[str, Any] = {}
        if "small_max_bytes" in data:
            kwargs["small_max_bytes"] = int(data["small_max_bytes"])
        if "medium_max_bytes" in data:
            kwargs["medium_max_bytes"] = int(data["medium_max_bytes"])
        return cls(table=table, type_overrides=overrides, **kwargs)

    def with_type_retention(self, job_type: str, outcome: JobState, seconds: float) -> RetentionPolicy:
        """Return a copy with ``seconds`` for every size class of ``job_type``/``outcome``."""
        overrides = copy.deepcopy(self.type_overrides)
        overrides.setdefault(job_type, {})[outcome.value] = {s.value: float(seconds) for s in SizeClass}
        return RetentionPolicy(
            table=copy.deepcopy(self.table),
            type_overrides=overrides,
            small_max_bytes=self.small_max_bytes,
            medium_max_bytes=self.medium_max_bytes,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "default": copy.deepcopy(self.table),
            "types": copy.deepcopy(self.type_overrides),
            "small_max_bytes": self.small_max_bytes,
            "medium_max_bytes": self.medium_max_bytes,
        }


def _check_size(size: str) -> None:
    if size not in {s.value for s in SizeClass}:
        raise InvalidConfigError(f"unknown size class {size!r}")


__all__ = [
    "SizeClass",
    "RetentionPolicy",
    "DEFAULT_RETENTION_TABLE",
    "payload_size",
]
