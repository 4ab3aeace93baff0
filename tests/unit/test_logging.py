"""
Unit tests for log context helpers.
"""

import asyncio

import pytest
import structlog
from opentelemetry.sdk.trace import TracerProvider

from taskflow.observability.logging import (
    add_trace_context,
    bind_context,
    clear_context,
    task_log_context,
)


class TestLogContext:
    """Tests for context binding."""

    def setup_method(self):
        clear_context()

    def test_task_context_bound_and_released(self):
        with task_log_context("email:send", "d-1", "critical"):
            bound = structlog.contextvars.get_contextvars()
            assert bound == {"task_type": "email:send", "delivery_id": "d-1", "queue": "critical"}

        assert structlog.contextvars.get_contextvars() == {}

    def test_bind_and_clear(self):
        bind_context(worker_id="w-1")
        assert structlog.contextvars.get_contextvars() == {"worker_id": "w-1"}

        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    @pytest.mark.asyncio
    async def test_concurrent_tasks_keep_own_context(self):
        """Test two slots running at once never see each other's delivery id."""
        seen = {}

        async def run(delivery_id: str):
            with task_log_context("email:send", delivery_id, "default"):
                await asyncio.sleep(0.01)
                seen[delivery_id] = structlog.contextvars.get_contextvars()["delivery_id"]

        await asyncio.gather(run("a"), run("b"))

        assert seen == {"a": "a", "b": "b"}


class TestTraceContext:
    """Tests for add_trace_context."""

    def test_no_span_leaves_event_alone(self):
        assert add_trace_context(None, "info", {"event": "hi"}) == {"event": "hi"}

    def test_recording_span_adds_ids(self):
        tracer = TracerProvider().get_tracer("tests")

        with tracer.start_as_current_span("task") as span:
            event = add_trace_context(None, "info", {"event": "hi"})

        context = span.get_span_context()
        assert event["trace_id"] == format(context.trace_id, "032x")
        assert event["span_id"] == format(context.span_id, "016x")
