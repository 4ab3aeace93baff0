"""
Queue inspector.

Read and repair access to the broker for operators: queue statistics,
pending and archived task listings, and retry or deletion of archived tasks.
"""

import logging
from collections.abc import Sequence

from taskflow.broker.base import Broker
from taskflow.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, Queue, TaskState
from taskflow.errors import InvalidQueueError, TaskNotFoundError
from taskflow.observability.metrics import MetricsCollector, get_metrics
from taskflow.types.inspection import AggregateStats, QueueOverview, TaskPage
from taskflow.types.task import TaskInfo

logger = logging.getLogger(__name__)


def parse_queue(queue: str | Queue) -> Queue:
    """
    Resolve a queue name.

    Raises:
        InvalidQueueError: If the name is not a known queue.
    """
    try:
        return Queue(queue)
    except ValueError:
        raise InvalidQueueError(str(queue)) from None


def clamp_page(page: int, page_size: int) -> tuple[int, int]:
    """Normalize pagination: page >= 1, page size in 1..100 (20 when unset)."""
    if page < 1:
        page = 1
    if page_size < 1:
        page_size = DEFAULT_PAGE_SIZE
    if page_size > MAX_PAGE_SIZE:
        page_size = MAX_PAGE_SIZE
    return page, page_size


class QueueInspector:
    """Operator view over a broker."""

    def __init__(self, broker: Broker, metrics: MetricsCollector | None = None):
        self._broker = broker
        self._metrics = metrics or get_metrics()

    async def queue_stats(self) -> QueueOverview:
        """
        Get statistics for every queue and their aggregate.

        Also refreshes the queue depth gauges.
        """
        queues = await self._broker.queue_stats()
        aggregate = AggregateStats()

        for stats in queues:
            self._metrics.update_queue_depth(stats)
            aggregate.total_size += stats.size
            aggregate.total_pending += stats.pending
            aggregate.total_active += stats.active
            aggregate.total_retry += stats.retry
            aggregate.total_archived += stats.archived
            aggregate.total_completed += stats.completed

        return QueueOverview(queues=queues, aggregate=aggregate)

    async def list_pending(
        self,
        queue: str | Queue,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> TaskPage:
        """List tasks waiting for their first delivery, oldest first."""
        return await self._list(parse_queue(queue), (TaskState.PENDING,), page, page_size)

    async def list_archived(
        self,
        queue: str | Queue,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> TaskPage:
        """List dead tasks: non-retryable failures and exhausted retries."""
        return await self._list(parse_queue(queue), (TaskState.ARCHIVED,), page, page_size)

    async def retry_archived(self, queue: str | Queue, delivery_id: str) -> TaskInfo:
        """
        Move an archived task back to pending with a fresh retry budget.

        Raises:
            InvalidQueueError: Unknown queue.
            TaskNotFoundError: No archived task with this id in the queue.
        """
        await self._get_archived(parse_queue(queue), delivery_id)
        info = await self._broker.run_task(delivery_id)
        if info is None:
            raise TaskNotFoundError(delivery_id)

        logger.info("Archived task retried", extra={"delivery_id": delivery_id, "queue": info.queue})
        return info

    async def delete_archived(self, queue: str | Queue, delivery_id: str) -> None:
        """
        Permanently delete an archived task.

        Raises:
            InvalidQueueError: Unknown queue.
            TaskNotFoundError: No archived task with this id in the queue.
        """
        await self._get_archived(parse_queue(queue), delivery_id)
        if not await self._broker.delete_task(delivery_id):
            raise TaskNotFoundError(delivery_id)

        logger.info("Archived task deleted", extra={"delivery_id": delivery_id})

    async def _get_archived(self, queue: Queue, delivery_id: str) -> TaskInfo:
        info = await self._broker.get_task(delivery_id)
        if info is None or info.queue != queue or info.state != TaskState.ARCHIVED:
            raise TaskNotFoundError(delivery_id)
        return info

    async def _list(
        self,
        queue: Queue,
        states: Sequence[TaskState],
        page: int,
        page_size: int,
    ) -> TaskPage:
        page, page_size = clamp_page(page, page_size)
        tasks, total = await self._broker.list_tasks(
            queue,
            states,
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        total_pages = max(1, (total + page_size - 1) // page_size)
        return TaskPage(
            tasks=tasks,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_next=page < total_pages,
        )
