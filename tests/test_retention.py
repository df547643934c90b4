"""Tests for RetentionPolicy."""

from __future__ import annotations

import pytest

from job_runtime.errors import InvalidConfigError
from job_runtime.jobs.retention import RetentionPolicy, SizeClass, payload_size
from job_runtime.jobs.types import JobState

from conftest import make_job

HOUR = 3600.0


class TestSizeClass:
    """Test payload size classification."""

    def test_payload_size(self):
        assert payload_size(None) == 0
        assert payload_size(b"abc") == 3
        assert payload_size("é") == 2
        assert payload_size({"a": 1}) == len('{"a": 1}')

    def test_thresholds(self):
        policy = RetentionPolicy(small_max_bytes=10, medium_max_bytes=100)
        assert policy.size_class(b"x" * 10) == SizeClass.SMALL
        assert policy.size_class(b"x" * 11) == SizeClass.MEDIUM
        assert policy.size_class(b"x" * 101) == SizeClass.LARGE


class TestRetentionFor:
    def test_defaults(self):
        policy = RetentionPolicy(small_max_bytes=10, medium_max_bytes=100)
        job = make_job()
        assert policy.retention_for(job, JobState.COMPLETED, b"x") == 24 * HOUR
        assert policy.retention_for(job, JobState.COMPLETED, b"x" * 50) == 6 * HOUR
        assert policy.retention_for(job, JobState.COMPLETED, b"x" * 500) == 1 * HOUR
        assert policy.retention_for(job, JobState.FAILED) == 72 * HOUR
        assert policy.retention_for(job, JobState.CANCELLED) == 1 * HOUR

    def test_non_terminal_outcome_rejected(self):
        with pytest.raises(ValueError):
            RetentionPolicy().retention_for(make_job(), JobState.RUNNING)

    def test_type_override(self):
        policy = RetentionPolicy().with_type_retention("echo", JobState.COMPLETED, 1.0)
        assert policy.retention_for(make_job("echo"), JobState.COMPLETED, "out") == 1.0
        assert policy.retention_for(make_job("report"), JobState.COMPLETED, "out") == 24 * HOUR

    def test_expires_at(self):
        policy = RetentionPolicy()
        assert policy.expires_at(make_job(), JobState.FAILED, 100.0) == 100.0 + 72 * HOUR


class TestFromDict:
    """Test building policies from configuration."""

    def test_merges_onto_defaults(self):
        policy = RetentionPolicy.from_dict({
            "default": {"completed": {"large": 60}},
            "types": {"report": {"failed": {"small": 10}}},
        })
        assert policy.table["completed"]["large"] == 60.0
        assert policy.table["completed"]["small"] == 24 * HOUR
        assert policy.retention_for(make_job("report"), JobState.FAILED) == 10.0

    def test_unknown_outcome_rejected(self):
        with pytest.raises(InvalidConfigError):
            RetentionPolicy.from_dict({"default": {"running": {"small": 1}}})

    def test_unknown_size_rejected(self):
        with pytest.raises(InvalidConfigError):
            RetentionPolicy.from_dict({"default": {"completed": {"huge": 1}}})

    def test_negative_rejected(self):
        with pytest.raises(InvalidConfigError):
            RetentionPolicy.from_dict({"default": {"completed": {"small": -1}}})

    def test_to_dict_round_trip(self):
        policy = RetentionPolicy().with_type_retention("echo", JobState.CANCELLED, 5)
        assert RetentionPolicy.from_dict(policy.to_dict()) == policy
