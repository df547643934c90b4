"""
Structured Logging for the job runtime.

This module provides:
- Structured JSON logging with consistent fields
- Per-task log context (correlation id, job id, worker id) kept in a
  ContextVar so concurrent coordinator workers never see each other's fields
- Typed helpers for state transitions and errors
- Timing utilities with slow-operation warnings
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import LoggingConfig

# =============================================================================
# Log Context
# =============================================================================


@dataclass
class LogContext:
    """Context information attached to log records."""

    trace_id: str | None = None
    correlation_id: str | None = None
    job_id: str | None = None
    job_type: str | None = None
    worker_id: str | None = None
    operation: str | None = None
    attempt: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in asdict(self).items() if v is not None and k != "extra"}
        d.update(self.extra)
        return d

    def with_update(self, **kwargs: Any) -> LogContext:
        """Create a new context with updated values.

        Unknown keyword arguments land in ``extra``.
        """
        extra = {**self.extra, **kwargs.pop("extra", {})}
        known = {k: kwargs.pop(k) for k in list(kwargs) if k in _CONTEXT_FIELDS}
        extra.update(kwargs)
        values = {k: getattr(self, k) for k in _CONTEXT_FIELDS}
        values.update(known)
        return LogContext(**values, extra=extra)


_CONTEXT_FIELDS = (
    "trace_id",
    "correlation_id",
    "job_id",
    "job_type",
    "worker_id",
    "operation",
    "attempt",
)

_log_context: contextvars.ContextVar[LogContext] = contextvars.ContextVar(
    "job_runtime_log_context", default=LogContext()
)


def current_context() -> LogContext:
    return _log_context.get()


# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger:
    """
    Logger with structured JSON output and context tracking.

    Example:
        ```python
        logger = get_logger("job_runtime.coordinator")

        with logger.job_context(job_id=job.job_id, job_type=job.type):
            logger.log_transition(job.job_id, "queued", "running")
        ```
    """

    def __init__(
        self,
        name: str = "job_runtime",
        level: str = "INFO",
        json_output: bool = True,
        stream: Any = None,
    ):
        self.name = name
        self.json_output = json_output

        self._logger = logging.getLogger(name)
        self._logger.setLevel(getattr(logging, level.upper()))

        # Configure the package root once; child loggers propagate to it.
        root = logging.getLogger(name.split(".")[0])
        if not root.handlers:
            handler = logging.StreamHandler(stream or sys.stderr)
            handler.setFormatter(JSONFormatter() if json_output else TextFormatter())
            root.addHandler(handler)

    @property
    def context(self) -> LogContext:
        return _log_context.get()

    @contextmanager
    def trace_context(self, trace_id: str | None = None, **kwargs: Any) -> Iterator[str]:
        """
        Context manager for trace correlation.

        Args:
            trace_id: Trace ID (auto-generated if not provided)
            **kwargs: Additional context fields

        Yields:
            The trace ID
        """
        trace_id = trace_id or generate_trace_id()
        token = _log_context.set(_log_context.get().with_update(trace_id=trace_id, **kwargs))
        try:
            yield trace_id
        finally:
            _log_context.reset(token)

    @contextmanager
    def job_context(
        self,
        job_id: str | None = None,
        job_type: str | None = None,
        correlation_id: str | None = None,
        **kwargs: Any,
    ) -> Iterator[LogContext]:
        """Attach job fields to every record logged inside the block."""
        updates = {k: v for k, v in kwargs.items() if v is not None}
        if job_id is not None:
            updates["job_id"] = job_id
        if job_type is not None:
            updates["job_type"] = job_type
        if correlation_id is not None:
            updates["correlation_id"] = correlation_id
            updates.setdefault("trace_id", correlation_id)
        ctx = _log_context.get().with_update(**updates)
        token = _log_context.set(ctx)
        try:
            yield ctx
        finally:
            _log_context.reset(token)

    def _log(
        self,
        level: int,
        message: str,
        event_type: str | None = None,
        data: dict[str, Any] | None = None,
        exc_info: bool = False,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return

        record_data = {
            "message": message,
            **_log_context.get().to_dict(),
        }

        if event_type:
            record_data["event_type"] = event_type

        if data:
            record_data.update(data)

        if self.json_output:
            self._logger.log(level, json.dumps(record_data, default=str), exc_info=exc_info)
        else:
            extras = " ".join(f"{k}={v}" for k, v in record_data.items() if k != "message")
            self._logger.log(level, f"{message} {extras}".rstrip(), exc_info=exc_info)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, data=kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, data=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, data=kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, data=kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, data=kwargs, exc_info=True)

    # Typed logging methods

    def log_transition(
        self,
        job_id: str,
        from_state: str,
        to_state: str,
        **kwargs: Any,
    ) -> None:
        """Log a stored state change of a job."""
        self._log(
            logging.INFO,
            f"Job {job_id} {from_state} -> {to_state}",
            event_type="transition",
            data={"job_id": job_id, "from_state": from_state, "to_state": to_state, **kwargs},
        )

    def log_error(
        self,
        error: BaseException,
        message: str | None = None,
        level: int = logging.ERROR,
        **kwargs: Any,
    ) -> None:
        """Log an error with context."""
        error_data = {
            "error_type": type(error).__name__,
            "error_message": str(error),
            **kwargs,
        }

        # Extract additional info from JobRuntimeError
        code = getattr(error, "code", None)
        if code is not None:
            error_data["error_code"] = str(getattr(code, "value", code))
        if hasattr(error, "retryable"):
            error_data["retryable"] = error.retryable
        context = getattr(error, "context", None)
        if context is not None and hasattr(context, "to_dict"):
            error_data["error_context"] = context.to_dict()

        self._log(
            level,
            message or f"Error: {error}",
            event_type="error",
            data=error_data,
        )


# =============================================================================
# Formatters
# =============================================================================


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Messages produced by StructuredLogger are already JSON objects; their
    fields are merged into the envelope instead of nested under ``message``.
    """

    def format(self, record: logging.LogRecord) -> str:
        envelope: dict[str, Any] = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        text = record.getMessage()
        try:
            fields = json.loads(text)
        except ValueError:
            fields = None
        if isinstance(fields, dict):
            envelope.update(fields)
        else:
            envelope["message"] = text
        if record.exc_info:
            envelope["exception"] = self.formatException(record.exc_info)
        return json.dumps(envelope, default=str)


class TextFormatter(logging.Formatter):
    """``HH:MM:SS.mmm LEVEL logger: message`` with optional ANSI colors."""

    _COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }

    def __init__(self, colors: bool = True) -> None:
        super().__init__()
        self.colors = colors

    def format(self, record: logging.LogRecord) -> str:
        stamp = _record_time(record).strftime("%H:%M:%S.%f")[:-3]
        level = f"{record.levelname:8}"
        if self.colors and record.levelno in self._COLORS:
            level = f"{self._COLORS[record.levelno]}{level}\033[0m"
        line = f"{stamp} {level} {record.name}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# =============================================================================
# Ids
# =============================================================================


def generate_trace_id() -> str:
    return f"trace_{uuid.uuid4().hex[:16]}"


def generate_worker_id(prefix: str = "worker") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


# =============================================================================
# Timing
# =============================================================================


@dataclass
class Timer:
    """Wall-time stopwatch reporting milliseconds."""

    started: float = field(default_factory=time.perf_counter)
    stopped: float | None = None

    def stop(self) -> float:
        self.stopped = time.perf_counter()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> float:
        until = time.perf_counter() if self.stopped is None else self.stopped
        return (until - self.started) * 1000.0


@contextmanager
def timed() -> Iterator[Timer]:
    """Time the enclosed block; ``elapsed_ms`` is frozen on exit."""
    timer = Timer()
    try:
        yield timer
    finally:
        timer.stop()


def warn_if_slow(
    logger: StructuredLogger,
    operation: str,
    elapsed_ms: float,
    slow_threshold_ms: float | None,
    **kwargs: Any,
) -> None:
    """Warn when ``elapsed_ms`` exceeds the threshold, debug-log otherwise."""
    duration_ms = round(elapsed_ms, 3)
    if slow_threshold_ms is None or elapsed_ms <= slow_threshold_ms:
        logger.debug(f"{operation} completed", duration_ms=duration_ms, **kwargs)
        return
    logger.warning(
        f"Slow operation: {operation} took {elapsed_ms:.0f}ms",
        operation=operation,
        duration_ms=duration_ms,
        threshold_ms=slow_threshold_ms,
        **kwargs,
    )


# =============================================================================
# Global Loggers
# =============================================================================

_loggers: dict[str, StructuredLogger] = {}
_defaults: dict[str, Any] = {"level": "INFO", "json_output": True}


def get_logger(name: str = "job_runtime") -> StructuredLogger:
    """Get or create a structured logger."""
    logger = _loggers.get(name)
    if logger is None:
        logger = _loggers[name] = StructuredLogger(name, **_defaults)
    return logger


def configure_logging(
    config: LoggingConfig | None = None,
    *,
    level: str | None = None,
    json_output: bool | None = None,
    stream: Any = None,
) -> StructuredLogger:
    """Configure the package loggers.

    Replaces the handler on the ``job_runtime`` root logger and re-applies
    the level to every logger created so far.
    """
    if config is not None:
        level = level or config.level
        json_output = config.json_output if json_output is None else json_output
    _defaults["level"] = (level or _defaults["level"]).upper()
    if json_output is not None:
        _defaults["json_output"] = json_output

    root = logging.getLogger("job_runtime")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter() if _defaults["json_output"] else TextFormatter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, _defaults["level"]))

    for logger in _loggers.values():
        logger.json_output = _defaults["json_output"]
        logger._logger.setLevel(getattr(logging, _defaults["level"]))

    return get_logger("job_runtime")


__all__ = [
    # Context
    "LogContext",
    "current_context",
    # Logger
    "StructuredLogger",
    # Formatters
    "JSONFormatter",
    "TextFormatter",
    # Timing
    "Timer",
    "timed",
    "warn_if_slow",
    # Utilities
    "generate_trace_id",
    "generate_worker_id",
    # Global
    "get_logger",
    "configure_logging",
]
