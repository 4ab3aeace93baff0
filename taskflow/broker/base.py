"""
Broker capability interfaces.

Components that only publish depend on :class:`TaskEnqueuer`; the worker and
the inspector depend on the full :class:`Broker`. Nothing holds a global
client instance; brokers are injected.
"""

import random
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from taskflow.constants import Queue, TaskState
from taskflow.types.task import Delivery, QueueStats, TaskEnvelope, TaskInfo


@runtime_checkable
class TaskEnqueuer(Protocol):
    """Anything that can durably accept a task envelope."""

    async def enqueue(self, envelope: TaskEnvelope) -> TaskInfo:
        """
        Hand the envelope to the broker.

        Returns once the broker has durably accepted it.

        Raises:
            BrokerUnavailableError: If the broker cannot be reached.
        """
        ...


class Broker(TaskEnqueuer, Protocol):
    """Durable priority queue with leasing, redelivery and archiving."""

    async def dequeue(self, queues: Sequence[Queue], timeout: float) -> Delivery | None:
        """
        Lease the next ready task, draining queues in strict priority order.

        Blocks up to ``timeout`` seconds when nothing is ready.
        """
        ...

    async def ack(self, delivery: Delivery) -> None:
        """Mark a delivery as successfully processed."""
        ...

    async def nack(self, delivery: Delivery, error: str, retry: bool) -> TaskState:
        """
        Report a failed delivery.

        The broker schedules a retry with backoff while ``retry`` is true and
        the retry budget is not spent; otherwise the task is archived.

        Returns:
            TaskState.RETRY or TaskState.ARCHIVED.
        """
        ...

    async def requeue(self, delivery: Delivery) -> None:
        """Return an interrupted delivery to its queue without spending a retry."""
        ...

    async def extend_lease(self, delivery: Delivery) -> bool:
        """
        Renew the lease of a delivery that is still being processed.

        Returns:
            False if the lease was already lost to another worker.
        """
        ...

    async def purge_completed(self) -> int:
        """Drop completed tasks older than the retention period. Returns the count."""
        ...

    async def get_task(self, delivery_id: str) -> TaskInfo | None:
        ...

    async def queue_stats(self) -> list[QueueStats]:
        ...

    async def list_tasks(
        self,
        queue: Queue,
        states: Sequence[TaskState],
        limit: int,
        offset: int,
    ) -> tuple[list[TaskInfo], int]:
        """List tasks of a queue in the given states, oldest first, with the total count."""
        ...

    async def run_task(self, delivery_id: str) -> TaskInfo | None:
        """Move an archived task back to pending. Returns None if not archived."""
        ...

    async def delete_task(self, delivery_id: str) -> bool:
        ...

    async def close(self) -> None:
        ...


def retry_delay_seconds(retried: int, base: float, cap: float) -> float:
    """
    Exponential backoff with jitter for the n-th redelivery.

    Args:
        retried: Number of retries already spent (0 for the first retry).
        base: Delay of the first retry in seconds. Zero disables backoff.
        cap: Upper bound in seconds.
    """
    if base <= 0:
        return 0.0
    delay = base * (2 ** min(retried, 32))
    return min(cap, delay + random.uniform(0, delay * 0.1))
