"""
Work unit registration and execution context.

A work unit is the caller-supplied code that runs for one job type:

    registry = WorkRegistry()

    @registry.work_unit("echo")
    async def echo(ctx: WorkContext, payload):
        await ctx.report_progress(50)
        ctx.check_cancelled()
        return payload

Synchronous callables are accepted and run in the shared work pool. How an
exception maps to a retry or a terminal failure is decided by the
FailureClassifier registered with the unit.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..cancellation import CancellationToken, CancelledError
from ..errors import (
    ExecutionError,
    InvalidProgressError,
    JobRuntimeError,
    StoreError,
    is_retryable,
)
from .types import ErrorInfo

ProgressReporter = Callable[[int], Awaitable[None]]


@dataclass
class WorkContext:
    """Per-attempt context handed to a work unit."""

    job_id: str
    job_type: str
    attempt: int
    cancellation_token: CancellationToken = field(default_factory=CancellationToken)
    correlation_id: str | None = None
    _reporter: ProgressReporter | None = field(default=None, repr=False)

    @property
    def is_cancelled(self) -> bool:
        return self.cancellation_token.is_cancelled

    def check_cancelled(self) -> None:
        """Raise CancelledError if the job was cancelled or the lease was lost."""
        self.cancellation_token.raise_if_cancelled()

    async def report_progress(self, percent: int) -> None:
        """Record progress (0-100). Lower values than already stored are ignored."""
        if isinstance(percent, bool) or not isinstance(percent, int) or not 0 <= percent <= 100:
            raise InvalidProgressError(
                f"progress must be an integer between 0 and 100, got {percent!r}"
            )
        if self._reporter is not None:
            await self._reporter(percent)
        self.check_cancelled()


@runtime_checkable
class WorkUnit(Protocol):
    """``unit(ctx, input) -> output``, sync or async."""

    def __call__(self, ctx: WorkContext, input: Any) -> Any: ...


@runtime_checkable
class FailureClassifier(Protocol):
    def classify(self, error: BaseException) -> ErrorInfo: ...


def _message(error: BaseException) -> str:
    if isinstance(error, JobRuntimeError):
        return error.message or type(error).__name__
    return str(error) or type(error).__name__


def _kind_from_name(error: BaseException) -> str:
    # InvalidProgressError -> invalid_progress
    name = type(error).__name__.removesuffix("Error") or type(error).__name__
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


class DefaultClassifier:
    """
    Classify with ``errors.is_retryable`` and give each failure a readable kind.

    - ExecutionError subclasses carry their own ``kind`` (or transient/permanent)
    - timeouts and connection errors are transient
    - other runtime errors are named after their class, e.g. ``invalid_progress``
    - anything else is permanent and keeps its exception type name
    """

    def classify(self, error: BaseException) -> ErrorInfo:
        retryable = is_retryable(error)
        if isinstance(error, ExecutionError):
            kind = error.kind or ("transient" if retryable else "permanent")
        elif isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            kind = "timeout"
        elif isinstance(error, ConnectionError):
            kind = "connection"
        elif isinstance(error, JobRuntimeError):
            kind = _kind_from_name(error)
        else:
            kind = type(error).__name__
        return ErrorInfo(kind=kind, message=_message(error), retryable=retryable)


class ExceptionTypeClassifier:
    """Classify by exception type, falling back to another classifier."""

    def __init__(
        self,
        retryable: tuple[type[BaseException], ...] = (),
        permanent: tuple[type[BaseException], ...] = (),
        fallback: FailureClassifier | None = None,
    ) -> None:
        self.retryable = retryable
        self.permanent = permanent
        self.fallback = fallback or DefaultClassifier()

    def classify(self, error: BaseException) -> ErrorInfo:
        if self.permanent and isinstance(error, self.permanent):
            return ErrorInfo(kind=type(error).__name__, message=_message(error), retryable=False)
        if self.retryable and isinstance(error, self.retryable):
            return ErrorInfo(kind=type(error).__name__, message=_message(error), retryable=True)
        return self.fallback.classify(error)


@dataclass(frozen=True)
class Registration:
    job_type: str
    unit: WorkUnit
    classifier: FailureClassifier
    execution_timeout: float | None = None


class WorkRegistry:
    """Work units keyed by job type."""

    def __init__(self, default_classifier: FailureClassifier | None = None) -> None:
        self._units: dict[str, Registration] = {}
        self._default_classifier = default_classifier or DefaultClassifier()

    def register(
        self,
        job_type: str,
        unit: WorkUnit,
        *,
        classifier: FailureClassifier | None = None,
        execution_timeout: float | None = None,
    ) -> Registration:
        if not job_type:
            raise ValueError("job_type must not be empty")
        if not callable(unit):
            raise TypeError(f"work unit for {job_type!r} is not callable")
        if job_type in self._units:
            raise ValueError(f"work unit already registered for {job_type!r}")
        if execution_timeout is not None and execution_timeout <= 0:
            raise ValueError("execution_timeout must be positive")
        registration = Registration(
            job_type=job_type,
            unit=unit,
            classifier=classifier or self._default_classifier,
            execution_timeout=execution_timeout,
        )
        self._units[job_type] = registration
        return registration

    def work_unit(
        self,
        job_type: str,
        *,
        classifier: FailureClassifier | None = None,
        execution_timeout: float | None = None,
    ) -> Callable[[WorkUnit], WorkUnit]:
        """Decorator form of :meth:`register`."""

        def decorator(unit: WorkUnit) -> WorkUnit:
            self.register(job_type, unit, classifier=classifier, execution_timeout=execution_timeout)
            return unit

        return decorator

    def unregister(self, job_type: str) -> bool:
        return self._units.pop(job_type, None) is not None

    def get(self, job_type: str) -> Registration | None:
        return self._units.get(job_type)

    @property
    def types(self) -> set[str]:
        return set(self._units)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._units

    def __len__(self) -> int:
        return len(self._units)


def is_infrastructure_error(error: BaseException) -> bool:
    """Store failures are the runtime's problem, never the job's."""
    return isinstance(error, StoreError)


__all__ = [
    "WorkContext",
    "WorkUnit",
    "FailureClassifier",
    "DefaultClassifier",
    "ExceptionTypeClassifier",
    "Registration",
    "WorkRegistry",
    "CancelledError",
    "is_infrastructure_error",
]
