"""
Worker server.

Pulls deliveries from the broker with a fixed number of concurrent pullers,
runs each through the composed middleware pipeline for its task type, and
reports the outcome back to the broker.

Lifecycle:
1. Handlers and middleware are registered.
2. start() validates the registration table and freezes the pipelines.
3. Pullers drain queues in strict priority order (critical > default > low).
   A heartbeat renews the broker lease of every in-flight delivery.
4. shutdown() stops pulling, signals in-flight handlers, waits up to the
   grace period, then cancels and requeues whatever is still running.
"""

import asyncio
import logging
import os
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from taskflow.broker.base import Broker
from taskflow.config import get_settings
from taskflow.constants import QUEUE_PRIORITY_ORDER, TASK_TYPE_PATTERN, Queue, TaskState
from taskflow.errors import (
    ConfigurationError,
    InfrastructureError,
    TaskTimeoutError,
    is_retryable,
)
from taskflow.observability.logging import task_log_context
from taskflow.types.task import Delivery, TaskContext
from taskflow.worker.middleware import Handler, Middleware, compose

logger = logging.getLogger(__name__)


@dataclass
class _InFlight:
    task: asyncio.Task
    ctx: TaskContext
    delivery: Delivery


class WorkerServer:
    """
    Concurrent task processor.

    Features:
    - Strict priority draining across the configured queues
    - Per-type handler registration with global and per-handler middleware
    - Per-task execution deadline
    - Lease heartbeat for long-running handlers
    - Graceful shutdown with requeue of interrupted deliveries
    """

    def __init__(
        self,
        broker: Broker,
        concurrency: int | None = None,
        queues: Sequence[Queue] | None = None,
        shutdown_timeout: float | None = None,
        task_timeout: float | None = None,
        poll_interval: float | None = None,
        heartbeat_interval: float | None = None,
        required_task_types: Iterable[str] = (),
        worker_id: str | None = None,
    ):
        """
        Initialize the server.

        Args:
            broker: Broker to pull deliveries from.
            concurrency: Number of concurrent pullers.
            queues: Queues to consume. Always drained in priority order.
            shutdown_timeout: Grace period for in-flight handlers on shutdown.
            task_timeout: Default execution deadline per task in seconds.
            poll_interval: Maximum time a puller blocks in one dequeue call.
            heartbeat_interval: Seconds between lease renewals of in-flight deliveries.
            required_task_types: Task types that must have a handler at start.
            worker_id: Identifier used in logs. Defaults to hostname + PID.
        """
        settings = get_settings()

        self._broker = broker
        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.concurrency = concurrency or settings.worker_concurrency
        requested = set(queues or settings.worker_queues)
        self.queues = [queue for queue in QUEUE_PRIORITY_ORDER if queue in requested]
        self.shutdown_timeout = (
            settings.worker_shutdown_timeout_seconds if shutdown_timeout is None else shutdown_timeout
        )
        self.task_timeout = task_timeout or settings.worker_task_timeout_seconds
        self.poll_interval = poll_interval or settings.broker_poll_interval_seconds
        self.heartbeat_interval = heartbeat_interval or settings.worker_heartbeat_interval_seconds
        self.required_task_types = tuple(required_task_types)

        self._handlers: dict[str, tuple[Handler, tuple[Middleware, ...]]] = {}
        self._middlewares: list[Middleware] = []
        self._pipelines: dict[str, Handler] | None = None

        self._pullers: list[asyncio.Task] = []
        self._heartbeat: asyncio.Task | None = None
        self._in_flight: dict[str, _InFlight] = {}
        self._running = False
        self._stopping = False
        self._stopped = asyncio.Event()

    # Registration

    def handle(self, task_type: str, handler: Handler, *middlewares: Middleware) -> None:
        """
        Register the handler for a task type.

        Args:
            task_type: Namespaced task type, e.g. ``"note:archive"``.
            handler: ``async def handler(ctx, payload) -> None``.
            *middlewares: Applied to this handler only, inside the global ones.

        Raises:
            ConfigurationError: On duplicate registration or after start.
        """
        if self._pipelines is not None:
            raise ConfigurationError(
                "handlers cannot be registered after the server started",
                {"task_type": task_type},
            )
        if task_type in self._handlers:
            raise ConfigurationError(
                "handler already registered for task type",
                {"task_type": task_type},
            )
        self._handlers[task_type] = (handler, middlewares)

    def handler(self, task_type: str, *middlewares: Middleware) -> Callable[[Handler], Handler]:
        """
        Decorator to register a task handler.

        Args:
            task_type: Namespaced task type.
            *middlewares: Per-handler middleware.

        Returns:
            Decorator function.
        """

        def decorator(func: Handler) -> Handler:
            self.handle(task_type, func, *middlewares)
            return func

        return decorator

    def use(self, *middlewares: Middleware) -> None:
        """Add global middleware, applied to every handler. First added is outermost."""
        if self._pipelines is not None:
            raise ConfigurationError("middleware cannot be added after the server started")
        self._middlewares.extend(middlewares)

    def registered_task_types(self) -> list[str]:
        return sorted(self._handlers)

    def validate(self) -> None:
        """
        Check the registration table.

        Raises:
            ConfigurationError: Empty table, malformed task type or a missing
                required handler.
        """
        if not self._handlers:
            raise ConfigurationError("no task handlers registered")

        for task_type in self._handlers:
            if not re.fullmatch(TASK_TYPE_PATTERN, task_type):
                raise ConfigurationError(
                    "task type must be namespaced as domain:action",
                    {"task_type": task_type},
                )

        missing = [t for t in self.required_task_types if t not in self._handlers]
        if missing:
            raise ConfigurationError(
                "required task types have no handler",
                {"task_types": missing},
            )

        if not self.queues:
            raise ConfigurationError("worker consumes no queues")

    # Lifecycle

    async def start(self) -> None:
        """Validate the registration table and start the pullers."""
        if self._running:
            return

        self._prepare()
        self._running = True
        self._stopping = False
        self._stopped.clear()

        for slot in range(self.concurrency):
            self._pullers.append(
                asyncio.create_task(self._pull_loop(), name=f"{self.worker_id}-puller-{slot}")
            )
        self._heartbeat = asyncio.create_task(
            self._heartbeat_loop(), name=f"{self.worker_id}-heartbeat"
        )

        logger.info(
            "Worker started",
            extra={
                "worker_id": self.worker_id,
                "concurrency": self.concurrency,
                "queues": [queue.value for queue in self.queues],
                "task_types": self.registered_task_types(),
            },
        )

    async def run(self) -> None:
        """Start the server and block until shutdown() completes."""
        await self.start()
        await self._stopped.wait()

    async def run_once(self, timeout: float = 0.0) -> bool:
        """
        Process at most one delivery (for testing or cron-style execution).

        Returns:
            True if a delivery was processed.
        """
        self._prepare()
        delivery = await self._broker.dequeue(self.queues, timeout)
        if delivery is None:
            return False
        await self._execute(delivery)
        return True

    async def shutdown(self) -> None:
        """
        Stop gracefully.

        In-flight handlers see ``ctx.cancelled`` set and get the grace period
        to finish; the rest are cancelled and their deliveries requeued.
        """
        if not self._running or self._stopping:
            return

        self._stopping = True
        logger.info(
            "Worker stopping",
            extra={"worker_id": self.worker_id, "in_flight": len(self._in_flight)},
        )

        for puller in self._pullers:
            puller.cancel()
        await asyncio.gather(*self._pullers, return_exceptions=True)
        self._pullers.clear()

        in_flight = list(self._in_flight.values())
        for entry in in_flight:
            entry.ctx.cancelled.set()

        if in_flight:
            _, pending = await asyncio.wait(
                [entry.task for entry in in_flight],
                timeout=self.shutdown_timeout,
            )
            if pending:
                logger.warning(
                    "Cancelling tasks still running after grace period",
                    extra={"worker_id": self.worker_id, "count": len(pending)},
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        # Leases stay renewed through the grace period
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            await asyncio.gather(self._heartbeat, return_exceptions=True)
            self._heartbeat = None

        self._running = False
        self._stopped.set()
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # Internals

    def _prepare(self) -> None:
        """Validate and compose pipelines once; the table is frozen afterwards."""
        if self._pipelines is not None:
            return
        self.validate()
        self._pipelines = {
            task_type: compose(self._with_deadline(handler), [*self._middlewares, *middlewares])
            for task_type, (handler, middlewares) in self._handlers.items()
        }

    def _with_deadline(self, handler: Handler) -> Handler:
        async def wrapper(ctx: TaskContext, payload: bytes) -> None:
            deadline = asyncio.timeout(ctx.timeout_seconds)
            try:
                async with deadline:
                    await handler(ctx, payload)
            except TimeoutError as e:
                if not deadline.expired():
                    raise
                raise TaskTimeoutError(
                    f"task exceeded {ctx.timeout_seconds}s deadline",
                    {"task_type": ctx.task_type, "delivery_id": ctx.delivery_id},
                ) from e

        return wrapper

    async def _pull_loop(self) -> None:
        while not self._stopping:
            try:
                delivery = await self._broker.dequeue(self.queues, self.poll_interval)
                if delivery is None:
                    continue
                await self._execute(delivery)
            except InfrastructureError:
                logger.exception("Broker unavailable", extra={"worker_id": self.worker_id})
                await asyncio.sleep(self.poll_interval)
            except Exception:
                logger.exception("Error in worker loop", extra={"worker_id": self.worker_id})
                await asyncio.sleep(self.poll_interval)

    async def _heartbeat_loop(self) -> None:
        """
        Periodically renew the leases of running deliveries, so the reaper
        never reclaims a task whose handler is still executing.
        """
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.extend_leases()
            except Exception:
                logger.exception("Error in heartbeat loop", extra={"worker_id": self.worker_id})

    async def extend_leases(self) -> int:
        """
        Renew the lease of every in-flight delivery once.

        Returns:
            Number of leases still held.
        """
        held = 0
        for entry in list(self._in_flight.values()):
            delivery_id = entry.delivery.delivery_id
            try:
                extended = await self._broker.extend_lease(entry.delivery)
            except InfrastructureError:
                logger.warning(
                    "Failed to extend lease",
                    extra={"delivery_id": delivery_id, "worker_id": self.worker_id},
                    exc_info=True,
                )
                continue

            if extended:
                held += 1
                logger.debug("Extended lease", extra={"delivery_id": delivery_id})
            elif delivery_id in self._in_flight:
                logger.warning(
                    "Lease lost while task is running",
                    extra={"delivery_id": delivery_id, "worker_id": self.worker_id},
                )
        return held

    async def _execute(self, delivery: Delivery) -> None:
        ctx = TaskContext.for_delivery(delivery, self.task_timeout)
        task = asyncio.create_task(self._process(delivery, ctx))
        self._in_flight[delivery.delivery_id] = _InFlight(task=task, ctx=ctx, delivery=delivery)
        task.add_done_callback(lambda _: self._in_flight.pop(delivery.delivery_id, None))
        # A cancelled puller must not take the handler down with it
        await asyncio.shield(task)

    async def _process(self, delivery: Delivery, ctx: TaskContext) -> None:
        with task_log_context(ctx.task_type, ctx.delivery_id, ctx.queue.value):
            pipeline = (self._pipelines or {}).get(ctx.task_type)

            if pipeline is None:
                logger.error(
                    "No handler registered for task type, archiving",
                    extra={"task_type": ctx.task_type, "delivery_id": ctx.delivery_id},
                )
                await self._report_failure(
                    delivery, f"no handler registered for task type {ctx.task_type}", retry=False
                )
                return

            try:
                await pipeline(ctx, delivery.envelope.payload)
            except asyncio.CancelledError:
                await asyncio.shield(self._requeue(delivery))
                raise
            except Exception as e:
                await self._report_failure(delivery, str(e), retry=is_retryable(e))
                return

            try:
                await self._broker.ack(delivery)
            except InfrastructureError:
                logger.exception(
                    "Failed to acknowledge task",
                    extra={"delivery_id": delivery.delivery_id},
                )

    async def _report_failure(self, delivery: Delivery, error: str, retry: bool) -> None:
        try:
            state = await self._broker.nack(delivery, error, retry=retry)
        except InfrastructureError:
            logger.exception(
                "Failed to report task failure",
                extra={"delivery_id": delivery.delivery_id},
            )
            return

        if state == TaskState.RETRY:
            logger.info(
                "Task scheduled for retry",
                extra={"delivery_id": delivery.delivery_id, "retry_count": delivery.retried + 1},
            )
        elif state == TaskState.ARCHIVED:
            logger.warning(
                "Task archived",
                extra={"delivery_id": delivery.delivery_id, "error": error, "retryable": retry},
            )

    async def _requeue(self, delivery: Delivery) -> None:
        try:
            await self._broker.requeue(delivery)
        except InfrastructureError:
            logger.exception(
                "Failed to requeue interrupted task",
                extra={"delivery_id": delivery.delivery_id},
            )
        else:
            logger.info("Interrupted task requeued", extra={"delivery_id": delivery.delivery_id})
