"""Tests for idempotent submission helpers."""

from __future__ import annotations

import pytest

from job_runtime.errors import InvalidSubmissionError
from job_runtime.jobs.idempotency import (
    MAX_KEY_LENGTH,
    IdempotencyGuard,
    derive_idempotency_key,
    validate_idempotency_key,
)

from conftest import START, make_job


class TestDeriveKey:
    """Test content-based key derivation."""

    def test_same_payload_same_key(self):
        a = derive_idempotency_key("report", {"b": 2, "a": 1})
        b = derive_idempotency_key("report", {"a": 1, "b": 2})
        assert a == b
        assert a.startswith("report:")

    def test_different_payload_different_key(self):
        assert derive_idempotency_key("report", {"a": 1}) != derive_idempotency_key("report", {"a": 2})

    def test_namespace_separates_keys(self):
        assert derive_idempotency_key("report", 1, namespace="tenant-a") != derive_idempotency_key(
            "report", 1, namespace="tenant-b"
        )


class TestValidateKey:
    def test_valid_key_returned(self):
        assert validate_idempotency_key("order-123:invoice") == "order-123:invoice"

    @pytest.mark.parametrize("key", ["", "   ", "x" * (MAX_KEY_LENGTH + 1), "bad\nkey"])
    def test_invalid_keys(self, key):
        with pytest.raises(InvalidSubmissionError) as exc_info:
            validate_idempotency_key(key)
        assert exc_info.value.errors[0]["loc"] == ["idempotency_key"]


class TestIdempotencyGuard:
    """Test the guard on top of the in-memory index."""

    @pytest.mark.asyncio
    async def test_duplicate_counted(self, store, metrics):
        guard = IdempotencyGuard(store, metrics)
        first, created = await guard.reserve("k1", make_job, now=START)
        again, created_again = await guard.reserve("k1", make_job, now=START)
        assert created and not created_again
        assert again.job_id == first.job_id
        assert metrics.count("deduplicated") == 1
        assert await guard.lookup("k1") == first.job_id

    @pytest.mark.asyncio
    async def test_release_frees_key(self, store, metrics):
        guard = IdempotencyGuard(store, metrics)
        job, _ = await guard.reserve("k1", make_job, now=START)
        assert await guard.release(job)
        assert await guard.lookup("k1") is None

    @pytest.mark.asyncio
    async def test_release_without_key(self, store, metrics):
        guard = IdempotencyGuard(store, metrics)
        job = await store.create(make_job())
        assert not await guard.release(job)

    @pytest.mark.asyncio
    async def test_invalid_key_rejected_before_store(self, store, metrics):
        guard = IdempotencyGuard(store, metrics)
        with pytest.raises(InvalidSubmissionError):
            await guard.reserve("", make_job, now=START)
        assert await store.count() == 0
