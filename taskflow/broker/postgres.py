"""
PostgreSQL-backed durable broker.

Each task is a row in the ``tasks`` table. Workers lease rows with
``FOR UPDATE SKIP LOCKED`` so a delivery is held by exactly one worker slot.
A running handler keeps its lease alive through worker heartbeats; leases of
crashed workers run out and are recovered by the reaper, which also purges
completed rows past their retention.
"""

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskflow.broker.base import retry_delay_seconds
from taskflow.config import get_settings
from taskflow.constants import QUEUE_PRIORITY_ORDER, Queue, TaskState
from taskflow.db.connection import session_scope
from taskflow.db.repository import TaskRepository
from taskflow.errors import BrokerUnavailableError
from taskflow.types.task import Delivery, QueueStats, TaskEnvelope, TaskInfo

logger = logging.getLogger(__name__)


def _parse_id(delivery_id: str) -> UUID | None:
    try:
        return UUID(delivery_id)
    except ValueError:
        return None


class PostgresBroker:
    """
    Durable broker over the tasks table.

    Every operation runs in its own short transaction. Database errors are
    surfaced as BrokerUnavailableError.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        worker_id: str | None = None,
        lease_duration_seconds: float | None = None,
        poll_interval: float | None = None,
        retry_backoff_base: float | None = None,
        retry_backoff_max: float | None = None,
        completed_retention_seconds: float | None = None,
    ):
        """
        Initialize the broker.

        Args:
            session_factory: Session factory bound to the broker database.
            worker_id: Lease owner name. Defaults to hostname + PID.
            lease_duration_seconds: Lease validity before the reaper reclaims a task.
            poll_interval: Seconds between polls while the queues are empty.
            retry_backoff_base: First retry delay in seconds.
            retry_backoff_max: Upper bound for the retry delay.
            completed_retention_seconds: How long completed rows are kept before
                purge_completed() deletes them.
        """
        settings = get_settings()

        self._session_factory = session_factory
        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self._lease_duration = timedelta(
            seconds=lease_duration_seconds or settings.broker_lease_duration_seconds
        )
        self._poll_interval = poll_interval or settings.broker_poll_interval_seconds
        self._backoff_base = (
            settings.retry_backoff_base_seconds if retry_backoff_base is None else retry_backoff_base
        )
        self._backoff_max = (
            settings.retry_backoff_max_seconds if retry_backoff_max is None else retry_backoff_max
        )
        self._completed_retention = timedelta(
            seconds=settings.broker_completed_retention_seconds
            if completed_retention_seconds is None
            else completed_retention_seconds
        )

    @asynccontextmanager
    async def _repository(self, action: str, **details: str) -> AsyncIterator[TaskRepository]:
        """Open a transaction and translate database failures."""
        try:
            async with session_scope(self._session_factory) as session:
                yield TaskRepository(session)
        except SQLAlchemyError as e:
            raise BrokerUnavailableError(
                f"failed to {action}",
                {**details, "error": type(e).__name__},
            ) from e

    async def enqueue(self, envelope: TaskEnvelope) -> TaskInfo:
        async with self._repository("enqueue task", task_type=envelope.type) as repo:
            task = await repo.create_task(envelope)
            return task.to_info()

    async def dequeue(self, queues: Sequence[Queue], timeout: float) -> Delivery | None:
        deadline = time.monotonic() + timeout
        while True:
            async with self._repository("lease task") as repo:
                task = await repo.acquire_lease(
                    worker_id=self.worker_id,
                    queues=queues,
                    lease_duration=self._lease_duration,
                )

            if task is not None:
                return Delivery(
                    delivery_id=str(task.id),
                    envelope=task.envelope,
                    retried=task.retried,
                    enqueued_at=task.created_at,
                    lease_owner=self.worker_id,
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._poll_interval, remaining))

    async def ack(self, delivery: Delivery) -> None:
        async with self._repository("acknowledge task", delivery_id=delivery.delivery_id) as repo:
            completed = await repo.complete_task(UUID(delivery.delivery_id), self._owner(delivery))

        if not completed:
            logger.warning(
                "Ack after lease was lost",
                extra={"delivery_id": delivery.delivery_id, "worker_id": self._owner(delivery)},
            )

    async def extend_lease(self, delivery: Delivery) -> bool:
        async with self._repository("extend lease", delivery_id=delivery.delivery_id) as repo:
            return await repo.extend_lease(
                UUID(delivery.delivery_id),
                self._owner(delivery),
                self._lease_duration,
            )

    async def purge_completed(self) -> int:
        cutoff = datetime.now(UTC) - self._completed_retention
        async with self._repository("purge completed tasks") as repo:
            return await repo.purge_completed(cutoff)

    async def nack(self, delivery: Delivery, error: str, retry: bool) -> TaskState:
        delay = timedelta(
            seconds=retry_delay_seconds(delivery.retried, self._backoff_base, self._backoff_max)
        )
        async with self._repository("record task failure", delivery_id=delivery.delivery_id) as repo:
            state = await repo.fail_task(
                UUID(delivery.delivery_id),
                self._owner(delivery),
                error=error,
                retry=retry,
                retry_delay=delay,
            )

        # Lease already reclaimed by the reaper, so the task is pending again
        return state or TaskState.PENDING

    async def requeue(self, delivery: Delivery) -> None:
        async with self._repository("requeue task", delivery_id=delivery.delivery_id) as repo:
            await repo.requeue_task(UUID(delivery.delivery_id), self._owner(delivery))

    async def get_task(self, delivery_id: str) -> TaskInfo | None:
        task_id = _parse_id(delivery_id)
        if task_id is None:
            return None
        async with self._repository("load task", delivery_id=delivery_id) as repo:
            task = await repo.get_task(task_id)
            return task.to_info() if task else None

    async def queue_stats(self) -> list[QueueStats]:
        async with self._repository("read queue stats") as repo:
            counts = await repo.get_queue_stats()

        return [
            QueueStats(
                queue=queue,
                **{state.value: counts.get((queue, state), 0) for state in TaskState},
            )
            for queue in QUEUE_PRIORITY_ORDER
        ]

    async def list_tasks(
        self,
        queue: Queue,
        states: Sequence[TaskState],
        limit: int,
        offset: int,
    ) -> tuple[list[TaskInfo], int]:
        async with self._repository("list tasks", queue=queue) as repo:
            tasks, total = await repo.list_tasks(queue, states, limit, offset)
            return [task.to_info() for task in tasks], total

    async def run_task(self, delivery_id: str) -> TaskInfo | None:
        task_id = _parse_id(delivery_id)
        if task_id is None:
            return None
        async with self._repository("run archived task", delivery_id=delivery_id) as repo:
            task = await repo.run_archived(task_id)
            return task.to_info() if task else None

    async def delete_task(self, delivery_id: str) -> bool:
        task_id = _parse_id(delivery_id)
        if task_id is None:
            return False
        async with self._repository("delete task", delivery_id=delivery_id) as repo:
            return await repo.delete_task(task_id)

    async def recover_expired_leases(self) -> int:
        """Return tasks whose lease ran out to pending. Used by the reaper."""
        async with self._repository("recover expired leases") as repo:
            return await repo.recover_expired_leases()

    async def close(self) -> None:
        # The engine is owned by the process entry point, see db.connection.close_db
        return None

    def _owner(self, delivery: Delivery) -> str:
        return delivery.lease_owner or self.worker_id
