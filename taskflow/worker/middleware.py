"""
Task handler middleware.

A handler is ``async def handler(ctx, payload) -> None`` and fails by raising.
A middleware takes a handler and returns a wrapped handler; pipelines are
composed once when the worker starts, first middleware outermost.
"""

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable, Sequence

from opentelemetry.trace import SpanKind, Tracer

from taskflow.constants import (
    SPAN_PROCESS_TASK_PREFIX,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_SUCCESS,
)
from taskflow.errors import HandlerCrashError, TaskflowError
from taskflow.observability.metrics import MetricsCollector, get_metrics
from taskflow.observability.tracing import get_tracer
from taskflow.types.task import TaskContext

logger = logging.getLogger(__name__)

Handler = Callable[[TaskContext, bytes], Awaitable[None]]
Middleware = Callable[[Handler], Handler]


def compose(handler: Handler, middlewares: Sequence[Middleware]) -> Handler:
    """
    Wrap a handler in middlewares.

    ``compose(h, [a, b])`` behaves as ``a(b(h))``: ``a`` sees the call first
    and the outcome last.
    """
    for middleware in reversed(middlewares):
        handler = middleware(handler)
    return handler


def recovery_middleware(handler: Handler) -> Handler:
    """
    Convert unexpected exceptions into a retryable HandlerCrashError.

    Taskflow errors pass through untouched so their retry flag is preserved.
    Cancellation is never intercepted.
    """

    @functools.wraps(handler)
    async def wrapper(ctx: TaskContext, payload: bytes) -> None:
        try:
            await handler(ctx, payload)
        except TaskflowError:
            raise
        except Exception as e:
            logger.exception(
                "Task handler crashed",
                extra={"task_type": ctx.task_type, "delivery_id": ctx.delivery_id},
            )
            raise HandlerCrashError(
                f"handler raised {type(e).__name__}",
                {"error": str(e)},
            ) from e

    return wrapper


def tracing_middleware(tracer: Tracer | None = None) -> Middleware:
    """Run each task inside a consumer span named ``task:<type>``."""

    def middleware(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(ctx: TaskContext, payload: bytes) -> None:
            active_tracer = tracer or get_tracer()
            with active_tracer.start_as_current_span(
                f"{SPAN_PROCESS_TASK_PREFIX}{ctx.task_type}",
                kind=SpanKind.CONSUMER,
                attributes={
                    "task.id": ctx.delivery_id,
                    "task.type": ctx.task_type,
                    "task.queue": ctx.queue.value,
                    "task.retry_count": ctx.retry_count,
                },
            ):
                await handler(ctx, payload)

        return wrapper

    return middleware


def metrics_middleware(metrics: MetricsCollector | None = None) -> Middleware:
    """Count executions and observe their duration per task type and queue."""

    def middleware(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(ctx: TaskContext, payload: bytes) -> None:
            collector = metrics or get_metrics()
            start_time = time.perf_counter()
            status = STATUS_FAILED
            try:
                await handler(ctx, payload)
                status = STATUS_SUCCESS
            except asyncio.CancelledError:
                status = STATUS_CANCELLED
                raise
            finally:
                collector.record_job_processed(
                    task_type=ctx.task_type,
                    queue=ctx.queue.value,
                    status=status,
                    duration_seconds=time.perf_counter() - start_time,
                )

        return wrapper

    return middleware


def logging_middleware(task_logger: logging.Logger | None = None) -> Middleware:
    """Emit one structured log line per execution."""
    log = task_logger or logger

    def middleware(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(ctx: TaskContext, payload: bytes) -> None:
            start_time = time.perf_counter()
            fields = {
                "task_type": ctx.task_type,
                "delivery_id": ctx.delivery_id,
                "queue": ctx.queue.value,
                "retry_count": ctx.retry_count,
            }
            try:
                await handler(ctx, payload)
            except asyncio.CancelledError:
                log.info(
                    "Task cancelled",
                    extra={**fields, "duration": time.perf_counter() - start_time, "status": STATUS_CANCELLED},
                )
                raise
            except Exception as e:
                log.warning(
                    "Task failed",
                    extra={
                        **fields,
                        "duration": time.perf_counter() - start_time,
                        "status": STATUS_FAILED,
                        "error": str(e),
                    },
                )
                raise
            log.info(
                "Task processed",
                extra={**fields, "duration": time.perf_counter() - start_time, "status": STATUS_SUCCESS},
            )

        return wrapper

    return middleware


def default_middlewares(
    metrics: MetricsCollector | None = None,
    tracer: Tracer | None = None,
) -> list[Middleware]:
    """The standard stack: recovery, tracing, metrics, logging."""
    return [
        recovery_middleware,
        tracing_middleware(tracer),
        metrics_middleware(metrics),
        logging_middleware(),
    ]
