"""
Enqueue client.

Thin wrapper that every producer (command layer, dispatch patterns) uses to
hand task envelopes to the broker.
"""

import logging

from opentelemetry.trace import Status, StatusCode

from taskflow.broker.base import TaskEnqueuer
from taskflow.constants import SPAN_ENQUEUE_TASK, Queue
from taskflow.errors import InfrastructureError
from taskflow.observability.metrics import MetricsCollector, get_metrics
from taskflow.observability.tracing import get_tracer
from taskflow.types.task import TaskEnvelope, TaskInfo

logger = logging.getLogger(__name__)


class EnqueueClient:
    """
    Submits task envelopes to a broker.

    The client never retries: a broker failure is surfaced to the caller as
    BrokerUnavailableError, who decides whether to retry or fail the request.
    """

    def __init__(self, broker: TaskEnqueuer, metrics: MetricsCollector | None = None):
        self._broker = broker
        self._metrics = metrics or get_metrics()

    async def enqueue(self, envelope: TaskEnvelope) -> TaskInfo:
        """
        Enqueue a task.

        Args:
            envelope: The task to submit.

        Returns:
            TaskInfo carrying the broker-assigned delivery_id.

        Raises:
            BrokerUnavailableError: If the broker did not accept the task.
        """
        with get_tracer().start_as_current_span(SPAN_ENQUEUE_TASK) as span:
            span.set_attribute("task.type", envelope.type)
            span.set_attribute("task.queue", envelope.queue.value)

            try:
                info = await self._broker.enqueue(envelope)
            except InfrastructureError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, e.message))
                logger.error(
                    "Failed to enqueue task",
                    extra={"task_type": envelope.type, "queue": envelope.queue, "error": str(e)},
                )
                raise

            span.set_attribute("task.id", info.delivery_id)

        self._metrics.record_task_enqueued(envelope.type, envelope.queue)
        logger.info(
            "Task enqueued",
            extra={
                "task_type": envelope.type,
                "queue": envelope.queue,
                "delivery_id": info.delivery_id,
            },
        )
        return info

    async def enqueue_critical(self, envelope: TaskEnvelope) -> TaskInfo:
        """Enqueue on the critical queue."""
        return await self.enqueue(envelope.with_queue(Queue.CRITICAL))

    async def enqueue_default(self, envelope: TaskEnvelope) -> TaskInfo:
        """Enqueue on the default queue."""
        return await self.enqueue(envelope.with_queue(Queue.DEFAULT))

    async def enqueue_low(self, envelope: TaskEnvelope) -> TaskInfo:
        """Enqueue on the low queue."""
        return await self.enqueue(envelope.with_queue(Queue.LOW))

    async def close(self) -> None:
        """Release the underlying broker connection."""
        close = getattr(self._broker, "close", None)
        if close is not None:
            await close()
