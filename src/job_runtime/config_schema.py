"""
JSON schemas for configuration validation.
"""

_SECONDS = {"type": "number", "minimum": 0}
_POSITIVE_SECONDS = {"type": "number", "exclusiveMinimum": 0}

COORDINATOR_SCHEMA = {
    "type": "object",
    "properties": {
        "workers": {"type": "integer", "minimum": 1},
        "poll_interval": _POSITIVE_SECONDS,
        "lease_timeout": _POSITIVE_SECONDS,
        "heartbeat_interval": _POSITIVE_SECONDS,
        "claim_batch_size": {"type": "integer", "minimum": 1},
        "execution_timeout": {"type": ["number", "null"], "exclusiveMinimum": 0},
        "base_delay": _SECONDS,
        "max_delay": _SECONDS,
        "jitter": {"type": "number", "minimum": 0, "maximum": 1},
        "default_max_retries": {"type": "integer", "minimum": 0},
        "max_retries_limit": {"type": "integer", "minimum": 0},
        "store_error_backoff": _POSITIVE_SECONDS,
    },
    "additionalProperties": False,
}

SWEEPER_SCHEMA = {
    "type": "object",
    "properties": {
        "enabled": {"type": "boolean"},
        "interval": _POSITIVE_SECONDS,
        "batch_size": {"type": "integer", "minimum": 1},
        "tombstone_ttl": _SECONDS,
    },
    "additionalProperties": False,
}

_SIZE_ROW = {
    "type": "object",
    "properties": {
        "small": _SECONDS,
        "medium": _SECONDS,
        "large": _SECONDS,
    },
    "additionalProperties": False,
}

_OUTCOME_TABLE = {
    "type": "object",
    "properties": {
        "completed": _SIZE_ROW,
        "failed": _SIZE_ROW,
        "cancelled": _SIZE_ROW,
    },
    "additionalProperties": False,
}

RETENTION_SCHEMA = {
    "type": "object",
    "properties": {
        "default": _OUTCOME_TABLE,
        "types": {"type": "object", "additionalProperties": _OUTCOME_TABLE},
        "small_max_bytes": {"type": "integer", "minimum": 1},
        "medium_max_bytes": {"type": "integer", "minimum": 1},
    },
    "additionalProperties": False,
}

STORE_SCHEMA = {
    "type": "object",
    "properties": {
        "backend": {"type": "string", "enum": ["memory", "postgres"]},
        "pg_dsn": {"type": ["string", "null"]},
        "jobs_table": {"type": "string", "pattern": "^[A-Za-z_][A-Za-z0-9_]*$"},
        "pool_min_size": {"type": "integer", "minimum": 1},
        "pool_max_size": {"type": "integer", "minimum": 1},
        "redis_url": {"type": ["string", "null"]},
        "notify_channel": {"type": "string", "minLength": 1},
    },
    "allOf": [
        {
            "if": {"properties": {"backend": {"const": "postgres"}}, "required": ["backend"]},
            "then": {"required": ["pg_dsn"]},
        },
    ],
    "additionalProperties": False,
}

SUBMISSION_SCHEMA = {
    "type": "object",
    "properties": {
        "max_input_bytes": {"type": "integer", "minimum": 1},
        "max_type_length": {"type": "integer", "minimum": 1},
        "slow_operation_ms": {"type": "number", "minimum": 0},
    },
    "additionalProperties": False,
}

LOGGING_SCHEMA = {
    "type": "object",
    "properties": {
        "level": {"type": "string", "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
        "format": {"type": "string", "enum": ["text", "json"]},
    },
    "additionalProperties": False,
}

TELEMETRY_SCHEMA = {
    "type": "object",
    "properties": {
        "enabled": {"type": "boolean"},
        "duration_window": {"type": "integer", "minimum": 1},
        "duration_buckets": {"type": "array", "items": {"type": "number", "exclusiveMinimum": 0}},
    },
    "additionalProperties": False,
}

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "coordinator": COORDINATOR_SCHEMA,
        "sweeper": SWEEPER_SCHEMA,
        "retention": RETENTION_SCHEMA,
        "store": STORE_SCHEMA,
        "submission": SUBMISSION_SCHEMA,
        "logging": LOGGING_SCHEMA,
        "telemetry": TELEMETRY_SCHEMA,
    },
    "additionalProperties": False,
}
