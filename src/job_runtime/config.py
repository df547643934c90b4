"""
Settings for job-runtime.

One dataclass per concern (coordinator, sweeper, retention, store,
submission, logging, telemetry), each validating itself in
``__post_init__``. Settings can be built in code, read from ``JOBS_*``
environment variables (optionally via a .env file), or loaded from a YAML
or TOML file that is checked against CONFIG_SCHEMA first.
"""

from __future__ import annotations

import copy
import dataclasses
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import jsonschema
import yaml
from dotenv import find_dotenv, load_dotenv

from .config_schema import CONFIG_SCHEMA
from .errors import InvalidConfigError
from .jobs.retention import RetentionPolicy, SizeClass
from .resilience import BackoffPolicy
from .telemetry import TelemetryConfig

# =============================================================================
# Coordinator Configuration
# =============================================================================


@dataclass
class CoordinatorConfig:
    """Configuration for execution coordinators."""

    # Concurrency
    workers: int = 4
    claim_batch_size: int = 10

    # Timing (seconds)
    poll_interval: float = 1.0
    lease_timeout: float = 30.0
    heartbeat_interval: float = 10.0
    execution_timeout: float | None = None
    store_error_backoff: float = 1.0

    # Retry backoff: min(base_delay * 2**retry_count, max_delay)
    base_delay: float = 1.0
    max_delay: float = 300.0
    jitter: float = 0.0

    # Retry budget
    default_max_retries: int = 3
    max_retries_limit: int = 10

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise InvalidConfigError("workers must be at least 1")
        if self.claim_batch_size < 1:
            raise InvalidConfigError("claim_batch_size must be at least 1")
        if self.poll_interval <= 0:
            raise InvalidConfigError("poll_interval must be positive")
        if self.lease_timeout <= 0:
            raise InvalidConfigError("lease_timeout must be positive")
        if not 0 < self.heartbeat_interval < self.lease_timeout:
            raise InvalidConfigError("heartbeat_interval must be positive and shorter than lease_timeout")
        if self.execution_timeout is not None and self.execution_timeout <= 0:
            raise InvalidConfigError("execution_timeout must be positive")
        if self.store_error_backoff <= 0:
            raise InvalidConfigError("store_error_backoff must be positive")
        if self.default_max_retries < 0:
            raise InvalidConfigError("default_max_retries cannot be negative")
        if self.max_retries_limit < self.default_max_retries:
            raise InvalidConfigError("max_retries_limit must be >= default_max_retries")
        try:
            self.backoff_policy()
        except ValueError as exc:
            raise InvalidConfigError(str(exc), cause=exc) from exc

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(base_delay=self.base_delay, max_delay=self.max_delay, jitter=self.jitter)


# =============================================================================
# Sweeper Configuration
# =============================================================================


@dataclass
class SweeperConfig:
    """Configuration for the retention sweeper."""

    enabled: bool = True
    interval: float = 30.0
    batch_size: int = 500

    # How long deleted ids keep answering "expired" instead of "not found"
    tombstone_ttl: float = 7 * 24 * 3600.0

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise InvalidConfigError("sweeper interval must be positive")
        if self.batch_size < 1:
            raise InvalidConfigError("sweeper batch_size must be at least 1")
        if self.tombstone_ttl < 0:
            raise InvalidConfigError("tombstone_ttl cannot be negative")


# =============================================================================
# Retention Configuration
# =============================================================================


@dataclass
class RetentionConfig:
    """Retention table overrides, merged onto the built-in defaults."""

    default: dict[str, dict[str, float]] = field(default_factory=dict)
    types: dict[str, dict[str, dict[str, float]]] = field(default_factory=dict)
    small_max_bytes: int = 64 * 1024
    medium_max_bytes: int = 1024 * 1024

    def __post_init__(self) -> None:
        self.policy()

    def policy(self) -> RetentionPolicy:
        return RetentionPolicy.from_dict({
            "default": self.default,
            "types": self.types,
            "small_max_bytes": self.small_max_bytes,
            "medium_max_bytes": self.medium_max_bytes,
        })


# =============================================================================
# Store Configuration
# =============================================================================

StoreBackendType = Literal["memory", "postgres"]


@dataclass
class StoreConfig:
    """Configuration for job persistence and wakeups."""

    backend: StoreBackendType = "memory"

    # PostgreSQL settings
    pg_dsn: str | None = field(default_factory=lambda: os.getenv("POSTGRES_DSN"))
    jobs_table: str = "jobs"
    pool_min_size: int = 1
    pool_max_size: int = 10

    # Redis settings (cross-process wakeups)
    redis_url: str | None = field(default_factory=lambda: os.getenv("REDIS_URL"))
    notify_channel: str = "job_runtime:wakeup"

    def __post_init__(self) -> None:
        if self.backend not in ("memory", "postgres"):
            raise InvalidConfigError(f"unknown store backend {self.backend!r}")
        if self.backend == "postgres" and not self.pg_dsn:
            raise InvalidConfigError("pg_dsn is required for the postgres backend")
        if self.pool_min_size < 1 or self.pool_max_size < self.pool_min_size:
            raise InvalidConfigError("pool sizes must satisfy 1 <= pool_min_size <= pool_max_size")


# =============================================================================
# Submission Configuration
# =============================================================================


@dataclass
class SubmissionConfig:
    """Limits applied to incoming submissions."""

    max_input_bytes: int = 1024 * 1024
    max_type_length: int = 128

    # Submission and status reads slower than this log a warning
    slow_operation_ms: float = 200.0

    def __post_init__(self) -> None:
        if self.max_input_bytes < 1:
            raise InvalidConfigError("max_input_bytes must be positive")
        if self.max_type_length < 1:
            raise InvalidConfigError("max_type_length must be positive")
        if self.slow_operation_ms < 0:
            raise InvalidConfigError("slow_operation_ms cannot be negative")


# =============================================================================
# Logging Configuration
# =============================================================================

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LogFormat = Literal["text", "json"]


@dataclass
class LoggingConfig:
    """Log level and output format for the package loggers."""

    level: LogLevel = "INFO"
    format: LogFormat = "json"

    def __post_init__(self) -> None:
        self.level = self.level.upper()  # type: ignore[assignment]
        if self.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise InvalidConfigError(f"unknown log level {self.level!r}")
        if self.format not in ("text", "json"):
            raise InvalidConfigError(f"unknown log format {self.format!r}")

    @property
    def json_output(self) -> bool:
        return self.format == "json"


# =============================================================================
# Master Configuration
# =============================================================================

_SECTIONS: dict[str, type] = {
    "coordinator": CoordinatorConfig,
    "sweeper": SweeperConfig,
    "retention": RetentionConfig,
    "store": StoreConfig,
    "submission": SubmissionConfig,
    "logging": LoggingConfig,
    "telemetry": TelemetryConfig,
}


@dataclass
class Settings:
    """
    All configuration sections of one job runtime deployment.

    Sections left out of a file or environment keep their defaults.
    """

    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)

    @classmethod
    def from_env(cls, prefix: str = "JOBS_") -> Settings:
        """
        Load settings from environment variables.

        Variables are named ``<prefix><SECTION>_<FIELD>``; retention table
        entries use ``<prefix>RETENTION_<OUTCOME>_<SIZE>`` in seconds.

        Example:
            JOBS_COORDINATOR_WORKERS=8
            JOBS_COORDINATOR_LEASE_TIMEOUT=60
            JOBS_STORE_BACKEND=postgres
            JOBS_RETENTION_COMPLETED_LARGE=1800
            JOBS_LOGGING_LEVEL=DEBUG
        """
        data: dict[str, dict[str, Any]] = {}
        for section, section_cls in _SECTIONS.items():
            for f in dataclasses.fields(section_cls):
                if f.name.startswith("_") or str(f.type).startswith("dict"):
                    continue
                raw = os.getenv(f"{prefix}{section}_{f.name}".upper())
                if raw is None:
                    continue
                data.setdefault(section, {})[f.name] = _coerce_env(raw, str(f.type), f"{prefix}{section}_{f.name}".upper())

        for outcome in ("completed", "failed", "cancelled"):
            for size in SizeClass:
                raw = os.getenv(f"{prefix}RETENTION_{outcome}_{size.value}".upper())
                if raw is None:
                    continue
                name = f"{prefix}RETENTION_{outcome}_{size.value}".upper()
                row = data.setdefault("retention", {}).setdefault("default", {}).setdefault(outcome, {})
                row[size.value] = _coerce_env(raw, "float", name)

        # JOBS_LOG_LEVEL shorthand
        if level := os.getenv(f"{prefix}LOG_LEVEL"):
            data.setdefault("logging", {}).setdefault("level", level.upper())

        return cls._build(data)

    @classmethod
    def from_file(cls, path: str | Path) -> Settings:
        """Load a .yaml/.yml or .toml file. Unknown keys are rejected."""
        path = Path(path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        suffix = path.suffix.lower()

        if suffix in (".yaml", ".yml"):
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        elif suffix == ".toml":
            with open(path, "rb") as f:
                data = tomllib.load(f)
        else:
            raise InvalidConfigError(f"Unsupported config file format: {suffix}")

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> Settings:
        """
        Create Settings from a dictionary.

        The dictionary is validated against CONFIG_SCHEMA first.
        """
        try:
            jsonschema.validate(instance=data, schema=CONFIG_SCHEMA)
        except jsonschema.ValidationError as e:
            location = ".".join(str(p) for p in e.absolute_path) or "<root>"
            raise InvalidConfigError(
                f"Configuration validation failed at {location}: {e.message}", cause=e
            ) from e
        return cls._build(data)

    @classmethod
    def _build(cls, data: dict[str, Any]) -> Settings:
        sections: dict[str, Any] = {}
        for name, section_cls in _SECTIONS.items():
            values = data.get(name)
            if values is None:
                continue
            try:
                sections[name] = section_cls(**values)
            except TypeError as e:
                raise InvalidConfigError(f"Invalid {name} configuration: {e}", cause=e) from e
            except ValueError as e:
                raise InvalidConfigError(str(e), cause=e) from e
        return cls(**sections)

    def to_dict(self) -> dict[str, Any]:
        """Plain nested dict that ``_from_dict`` accepts back."""

        def convert(obj: Any) -> Any:
            if dataclasses.is_dataclass(obj):
                return {
                    f.name: convert(getattr(obj, f.name))
                    for f in dataclasses.fields(obj)
                    if not f.name.startswith("_")
                }
            if isinstance(obj, dict):
                return {k: convert(v) for k, v in obj.items()}
            if isinstance(obj, tuple):
                return list(obj)
            if isinstance(obj, Path):
                return str(obj)
            return copy.deepcopy(obj)

        return convert(self)


def _coerce_env(raw: str, type_hint: str, name: str) -> Any:
    raw = raw.strip()
    try:
        if raw.lower() in ("", "none", "null") and "None" in type_hint:
            return None
        if type_hint.startswith("bool"):
            if raw.lower() in ("1", "true", "yes", "on"):
                return True
            if raw.lower() in ("0", "false", "no", "off"):
                return False
            raise ValueError(f"not a boolean: {raw!r}")
        if type_hint.startswith("tuple"):
            return tuple(float(part) for part in raw.split(","))
        if "float" in type_hint:
            return float(raw)
        if "int" in type_hint:
            return int(raw)
    except ValueError as e:
        raise InvalidConfigError(f"Invalid value for {name}: {e}", cause=e) from e
    return raw


# =============================================================================
# Global Settings & Helpers
# =============================================================================

_global_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance, creating from the environment if needed."""
    global _global_settings
    if _global_settings is None:
        _global_settings = Settings.from_env()
    return _global_settings


def configure(settings: Settings | None = None, **kwargs: Any) -> Settings:
    """
    Configure global settings.

    Args:
        settings: Settings object to use globally
        **kwargs: Replace whole sections, e.g. ``coordinator=CoordinatorConfig(workers=8)``

    Returns:
        The configured Settings object
    """
    global _global_settings

    if settings is not None:
        _global_settings = settings
    elif _global_settings is None:
        _global_settings = Settings.from_env()

    for key, value in kwargs.items():
        if key not in _SECTIONS:
            raise InvalidConfigError(f"Unknown settings section: {key}")
        setattr(_global_settings, key, value)

    return _global_settings


def reset_settings() -> None:
    global _global_settings
    _global_settings = None


def load_env(path: str | None = None, *, override: bool = False) -> bool:
    """Load a .env file (found with find_dotenv() when no path is given). Returns whether one was loaded."""
    env_path = path or find_dotenv(usecwd=True)
    if not env_path:
        return False
    return load_dotenv(env_path, override=override)


__all__ = [
    "CoordinatorConfig",
    "SweeperConfig",
    "RetentionConfig",
    "StoreConfig",
    "SubmissionConfig",
    "LoggingConfig",
    "TelemetryConfig",
    "Settings",
    "get_settings",
    "configure",
    "reset_settings",
    "load_env",
]
