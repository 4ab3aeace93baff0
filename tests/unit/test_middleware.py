"""
Unit tests for handler middleware.
"""

import asyncio
import logging
from datetime import UTC, datetime
from uuid import uuid4

import pytest
from opentelemetry.trace import SpanKind

from taskflow.constants import Queue
from taskflow.errors import HandlerCrashError, TransientError, ValidationError, is_retryable
from taskflow.types.task import Delivery, TaskContext, TaskEnvelope
from taskflow.worker.middleware import (
    compose,
    default_middlewares,
    logging_middleware,
    metrics_middleware,
    recovery_middleware,
    tracing_middleware,
)


def make_ctx(task_type: str = "email:send", queue: Queue = Queue.DEFAULT, retried: int = 0) -> TaskContext:
    delivery = Delivery(
        delivery_id=uuid4().hex,
        envelope=TaskEnvelope(type=task_type, queue=queue),
        retried=retried,
        enqueued_at=datetime.now(UTC),
    )
    return TaskContext.for_delivery(delivery)


def processed(metrics, status: str, task_type: str = "email:send", queue: str = "default") -> float:
    return metrics.registry.get_sample_value(
        "jobs_processed_total", {"task_type": task_type, "queue": queue, "status": status}
    ) or 0.0


def recording(name: str, calls: list[str]):
    def middleware(handler):
        async def wrapper(ctx, payload):
            calls.append(f"{name}:before")
            await handler(ctx, payload)
            calls.append(f"{name}:after")

        return wrapper

    return middleware


class TestCompose:
    """Tests for middleware composition."""

    @pytest.mark.asyncio
    async def test_first_middleware_is_outermost(self):
        """Test compose(h, [a, b]) runs as a(b(h))."""
        calls: list[str] = []

        async def handler(ctx, payload):
            calls.append("handler")

        pipeline = compose(handler, [recording("a", calls), recording("b", calls)])
        await pipeline(make_ctx(), b"")

        assert calls == ["a:before", "b:before", "handler", "b:after", "a:after"]

    @pytest.mark.asyncio
    async def test_no_middleware(self):
        calls: list[bytes] = []

        async def handler(ctx, payload):
            calls.append(payload)

        await compose(handler, [])(make_ctx(), b"x")

        assert calls == [b"x"]


class TestRecoveryMiddleware:
    """Tests for recovery_middleware."""

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_retryable(self):
        """Test a crash is converted into a retryable HandlerCrashError."""

        async def handler(ctx, payload):
            raise KeyError("missing")

        with pytest.raises(HandlerCrashError) as exc_info:
            await recovery_middleware(handler)(make_ctx(), b"")

        assert is_retryable(exc_info.value)
        assert isinstance(exc_info.value.__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_taskflow_errors_pass_through(self):
        """Test a non-retryable error keeps its flag."""

        async def handler(ctx, payload):
            raise ValidationError("bad payload")

        with pytest.raises(ValidationError):
            await recovery_middleware(handler)(make_ctx(), b"")

    @pytest.mark.asyncio
    async def test_cancellation_not_intercepted(self):
        async def handler(ctx, payload):
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await recovery_middleware(handler)(make_ctx(), b"")


class TestTracingMiddleware:
    """Tests for tracing_middleware."""

    @pytest.mark.asyncio
    async def test_span_per_task(self, span_exporter):
        """Test each execution runs in a consumer span named after the task type."""

        async def handler(ctx, payload):
            pass

        ctx = make_ctx(task_type="order:ship", queue=Queue.CRITICAL, retried=2)
        await tracing_middleware()(handler)(ctx, b"")

        (span,) = span_exporter.get_finished_spans()
        assert span.name == "task:order:ship"
        assert span.kind == SpanKind.CONSUMER
        assert span.attributes["task.id"] == ctx.delivery_id
        assert span.attributes["task.type"] == "order:ship"
        assert span.attributes["task.queue"] == "critical"
        assert span.attributes["task.retry_count"] == 2

    @pytest.mark.asyncio
    async def test_span_records_failure(self, span_exporter):
        async def handler(ctx, payload):
            raise TransientError("smtp down")

        with pytest.raises(TransientError):
            await tracing_middleware()(handler)(make_ctx(), b"")

        (span,) = span_exporter.get_finished_spans()
        assert not span.status.is_ok
        assert span.events[0].name == "exception"


class TestMetricsMiddleware:
    """Tests for metrics_middleware."""

    @pytest.mark.asyncio
    async def test_success_counted(self, metrics):
        async def handler(ctx, payload):
            pass

        await metrics_middleware(metrics)(handler)(make_ctx(), b"")

        assert processed(metrics, "success") == 1
        assert metrics.registry.get_sample_value(
            "job_duration_seconds_count", {"task_type": "email:send", "queue": "default"}
        ) == 1

    @pytest.mark.asyncio
    async def test_failure_counted(self, metrics):
        async def handler(ctx, payload):
            raise TransientError("smtp down")

        with pytest.raises(TransientError):
            await metrics_middleware(metrics)(handler)(make_ctx(), b"")

        assert processed(metrics, "failed") == 1
        assert processed(metrics, "success") == 0

    @pytest.mark.asyncio
    async def test_cancellation_counted(self, metrics):
        async def handler(ctx, payload):
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await metrics_middleware(metrics)(handler)(make_ctx(), b"")

        assert processed(metrics, "cancelled") == 1


class TestLoggingMiddleware:
    """Tests for logging_middleware."""

    @pytest.mark.asyncio
    async def test_logs_success(self, caplog):
        async def handler(ctx, payload):
            pass

        ctx = make_ctx()
        with caplog.at_level(logging.INFO, logger="taskflow.worker.middleware"):
            await logging_middleware()(handler)(ctx, b"")

        (record,) = [r for r in caplog.records if r.message == "Task processed"]
        assert record.status == "success"
        assert record.delivery_id == ctx.delivery_id
        assert record.duration >= 0

    @pytest.mark.asyncio
    async def test_logs_failure_and_reraises(self, caplog):
        async def handler(ctx, payload):
            raise TransientError("smtp down")

        with caplog.at_level(logging.INFO, logger="taskflow.worker.middleware"):
            with pytest.raises(TransientError):
                await logging_middleware()(handler)(make_ctx(), b"")

        (record,) = [r for r in caplog.records if r.message == "Task failed"]
        assert record.status == "failed"
        assert record.levelno == logging.WARNING
        assert "smtp down" in record.error

    @pytest.mark.asyncio
    async def test_custom_logger(self, caplog):
        async def handler(ctx, payload):
            pass

        custom = logging.getLogger("tests.tasks")
        with caplog.at_level(logging.INFO, logger="tests.tasks"):
            await logging_middleware(custom)(handler)(make_ctx(), b"")

        assert any(r.name == "tests.tasks" for r in caplog.records)


class TestDefaultMiddlewares:
    """Tests for the standard stack."""

    @pytest.mark.asyncio
    async def test_crash_is_counted_as_failure(self, metrics, span_exporter):
        """Test a crash surfaces as HandlerCrashError after metrics and tracing saw it."""

        async def handler(ctx, payload):
            raise ZeroDivisionError()

        pipeline = compose(handler, default_middlewares(metrics))

        with pytest.raises(HandlerCrashError):
            await pipeline(make_ctx(), b"")

        assert processed(metrics, "failed") == 1
        assert [span.name for span in span_exporter.get_finished_spans()] == ["task:email:send"]
