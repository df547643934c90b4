"""Tests for work unit registration, classification and execution helpers."""

from __future__ import annotations

import asyncio
import threading

import pytest

from job_runtime.cancellation import CancellationToken, CancelledError
from job_runtime.clock import ManualClock
from job_runtime.concurrency import call_maybe_async, run_sync
from job_runtime.errors import (
    InvalidProgressError,
    PermanentJobError,
    StoreUnavailableError,
    TransientJobError,
)
from job_runtime.jobs.work import (
    DefaultClassifier,
    ExceptionTypeClassifier,
    WorkContext,
    WorkRegistry,
    is_infrastructure_error,
)


class TestDefaultClassifier:
    """Test mapping of exceptions to ErrorInfo."""

    @pytest.mark.parametrize(
        "error, kind, retryable",
        [
            (TransientJobError("rate limited", kind="throttled"), "throttled", True),
            (TransientJobError("blip"), "transient", True),
            (PermanentJobError("bad row", kind="validation"), "validation", False),
            (PermanentJobError("bad row"), "permanent", False),
            (asyncio.TimeoutError(), "timeout", True),
            (ConnectionResetError("reset"), "connection", True),
            (KeyError("missing"), "KeyError", False),
            (InvalidProgressError("progress 150"), "invalid_progress", False),
            (StoreUnavailableError("db down"), "store_unavailable", True),
        ],
    )
    def test_classify(self, error, kind, retryable):
        info = DefaultClassifier().classify(error)
        assert info.kind == kind
        assert info.retryable is retryable
        assert info.message

    def test_message_falls_back_to_type_name(self):
        assert DefaultClassifier().classify(RuntimeError()).message == "RuntimeError"


class TestExceptionTypeClassifier:
    def test_explicit_types_win(self):
        classifier = ExceptionTypeClassifier(retryable=(KeyError,), permanent=(ConnectionError,))
        assert classifier.classify(KeyError("k")).retryable is True
        assert classifier.classify(ConnectionError("c")).retryable is False

    def test_listed_types_are_named_after_the_exception(self):
        classifier = ExceptionTypeClassifier(retryable=(KeyError,), permanent=(ConnectionError,))
        assert classifier.classify(KeyError("k")).kind == "KeyError"
        info = classifier.classify(ConnectionResetError("reset"))
        assert info.kind == "ConnectionResetError"
        assert info.retryable is False
        assert info.message == "reset"

    def test_permanent_wins_over_retryable(self):
        classifier = ExceptionTypeClassifier(retryable=(LookupError,), permanent=(KeyError,))
        assert classifier.classify(KeyError("k")).retryable is False
        assert classifier.classify(IndexError("i")).retryable is True

    def test_unlisted_types_use_default_classifier(self):
        classifier = ExceptionTypeClassifier(permanent=(KeyError,))
        info = classifier.classify(asyncio.TimeoutError())
        assert info.kind == "timeout"
        assert info.retryable is True

    def test_fallback(self):
        classifier = ExceptionTypeClassifier(retryable=(KeyError,))
        info = classifier.classify(TransientJobError("blip", kind="upstream"))
        assert info.kind == "upstream"
        assert info.retryable


class TestWorkRegistry:
    def test_register_and_lookup(self):
        registry = WorkRegistry()

        async def unit(ctx, payload):
            return payload

        registration = registry.register("echo", unit, execution_timeout=5.0)
        assert registry.get("echo") is registration
        assert "echo" in registry
        assert registry.types == {"echo"}
        assert len(registry) == 1
        assert isinstance(registration.classifier, DefaultClassifier)

    def test_decorator(self):
        registry = WorkRegistry()

        @registry.work_unit("resize")
        def resize(ctx, payload):
            return payload

        assert registry.get("resize").unit is resize

    @pytest.mark.parametrize(
        "job_type, unit, kwargs, error",
        [
            ("", lambda ctx, p: p, {}, ValueError),
            ("echo", "not callable", {}, TypeError),
            ("echo", lambda ctx, p: p, {"execution_timeout": 0}, ValueError),
        ],
    )
    def test_invalid_registration(self, job_type, unit, kwargs, error):
        with pytest.raises(error):
            WorkRegistry().register(job_type, unit, **kwargs)

    def test_duplicate_registration(self):
        registry = WorkRegistry()
        registry.register("echo", lambda ctx, p: p)
        with pytest.raises(ValueError):
            registry.register("echo", lambda ctx, p: p)

    def test_unregister(self):
        registry = WorkRegistry()
        registry.register("echo", lambda ctx, p: p)
        assert registry.unregister("echo")
        assert not registry.unregister("echo")
        assert registry.get("echo") is None

    def test_custom_default_classifier(self):
        classifier = ExceptionTypeClassifier(retryable=(KeyError,))
        registry = WorkRegistry(default_classifier=classifier)
        assert registry.register("echo", lambda ctx, p: p).classifier is classifier


class TestWorkContext:
    """Test progress validation and cancellation checks."""

    @pytest.mark.asyncio
    async def test_progress_forwarded(self):
        reported = []

        async def reporter(percent):
            reported.append(percent)

        ctx = WorkContext("job_1", "echo", 1, _reporter=reporter)
        await ctx.report_progress(0)
        await ctx.report_progress(100)
        assert reported == [0, 100]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [-1, 101, 50.5, True, "50"])
    async def test_invalid_progress(self, value):
        ctx = WorkContext("job_1", "echo", 1)
        with pytest.raises(InvalidProgressError):
            await ctx.report_progress(value)

    @pytest.mark.asyncio
    async def test_progress_raises_once_cancelled(self):
        token = CancellationToken()
        ctx = WorkContext("job_1", "echo", 1, cancellation_token=token)
        await ctx.report_progress(10)
        token.cancel("client")
        assert ctx.is_cancelled
        with pytest.raises(CancelledError):
            await ctx.report_progress(20)
        with pytest.raises(CancelledError):
            ctx.check_cancelled()


class TestInfrastructureErrors:
    def test_store_errors_are_infrastructure(self):
        assert is_infrastructure_error(StoreUnavailableError())
        assert not is_infrastructure_error(TransientJobError("blip"))


class TestConcurrencyHelpers:
    @pytest.mark.asyncio
    async def test_run_sync_off_loop_thread(self):
        main = threading.get_ident()
        assert await run_sync(threading.get_ident) != main

    @pytest.mark.asyncio
    async def test_run_sync_propagates_errors(self):
        def boom():
            raise ValueError("sync failure")

        with pytest.raises(ValueError, match="sync failure"):
            await run_sync(boom)

    @pytest.mark.asyncio
    async def test_call_maybe_async(self):
        async def coro(x):
            return x * 2

        class AsyncCallable:
            async def __call__(self, x):
                return x + 1

        assert await call_maybe_async(coro, 2) == 4
        assert await call_maybe_async(lambda x: x - 1, 2) == 1
        assert await call_maybe_async(AsyncCallable(), 2) == 3


class TestManualClock:
    def test_advance_and_set(self):
        clock = ManualClock(start=1_000.0)
        assert clock.advance(1.5) == 1_001.5
        clock.set(5.0)
        assert clock.now() == 5.0

    def test_cannot_go_backwards(self):
        with pytest.raises(ValueError):
            ManualClock(start=0).advance(-1)
