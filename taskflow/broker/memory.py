"""
In-process broker.

Keeps tasks in memory with the same lifecycle as the durable broker: strict
priority draining, retry with backoff, archiving and requeue. Completed tasks
are kept for the retention period, then dropped. Used for local runs and
tests; all state is lost when the process exits.
"""

import asyncio
import logging
import math
import time
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from taskflow.broker.base import retry_delay_seconds
from taskflow.config import get_settings
from taskflow.constants import QUEUE_PRIORITY_ORDER, Queue, TaskState
from taskflow.errors import BrokerUnavailableError
from taskflow.types.task import (
    Delivery,
    QueueStats,
    TaskEnvelope,
    TaskInfo,
    payload_preview,
)

logger = logging.getLogger(__name__)


@dataclass
class _TaskRecord:
    envelope: TaskEnvelope
    delivery_id: str
    enqueued_at: datetime
    ready_at: float
    state: TaskState = TaskState.PENDING
    retried: int = 0
    last_error: str | None = None
    completed_at: float | None = None

    def to_info(self) -> TaskInfo:
        next_process_at = None
        if self.state in (TaskState.PENDING, TaskState.RETRY):
            delay = max(0.0, self.ready_at - time.monotonic())
            next_process_at = datetime.now(UTC) + timedelta(seconds=delay)
        return TaskInfo(
            delivery_id=self.delivery_id,
            type=self.envelope.type,
            queue=self.envelope.queue,
            state=self.state,
            max_retry=self.envelope.max_retry,
            retried=self.retried,
            last_error=self.last_error,
            enqueued_at=self.enqueued_at,
            next_process_at=next_process_at,
            payload_preview=payload_preview(self.envelope.payload),
        )


class InMemoryBroker:
    """
    Broker backed by process memory.

    All mutation happens under one asyncio condition, which also wakes
    blocked dequeuers when tasks arrive or become ready.
    """

    def __init__(
        self,
        retry_backoff_base: float | None = None,
        retry_backoff_max: float | None = None,
        completed_retention: float | None = None,
    ):
        settings = get_settings()
        self._completed_retention = (
            settings.broker_completed_retention_seconds
            if completed_retention is None
            else completed_retention
        )
        self._backoff_base = (
            settings.retry_backoff_base_seconds if retry_backoff_base is None else retry_backoff_base
        )
        self._backoff_max = (
            settings.retry_backoff_max_seconds if retry_backoff_max is None else retry_backoff_max
        )
        self._tasks: dict[str, _TaskRecord] = {}
        self._ready: dict[Queue, deque[str]] = {queue: deque() for queue in Queue}
        # Completion order, which is also expiry order
        self._completed: deque[str] = deque()
        self._changed = asyncio.Condition()
        self._closed = False

    async def enqueue(self, envelope: TaskEnvelope) -> TaskInfo:
        if self._closed:
            raise BrokerUnavailableError("broker is closed", {"task_type": envelope.type})

        record = _TaskRecord(
            envelope=envelope,
            delivery_id=uuid4().hex,
            enqueued_at=datetime.now(UTC),
            ready_at=time.monotonic(),
        )
        async with self._changed:
            self._tasks[record.delivery_id] = record
            self._ready[envelope.queue].append(record.delivery_id)
            self._changed.notify_all()

        return record.to_info()

    async def dequeue(self, queues: Sequence[Queue], timeout: float) -> Delivery | None:
        if self._closed:
            raise BrokerUnavailableError("broker is closed")

        deadline = time.monotonic() + timeout
        async with self._changed:
            while True:
                now = time.monotonic()
                record = self._pop_ready(queues, now)
                if record is not None:
                    record.state = TaskState.ACTIVE
                    return Delivery(
                        delivery_id=record.delivery_id,
                        envelope=record.envelope,
                        retried=record.retried,
                        enqueued_at=record.enqueued_at,
                    )

                remaining = deadline - now
                if remaining <= 0 or self._closed:
                    return None

                # Wake for new work, or when the earliest delayed retry becomes ready
                wait = min(remaining, self._next_ready_in(queues, now))
                try:
                    await asyncio.wait_for(self._changed.wait(), timeout=wait)
                except TimeoutError:
                    pass

    async def ack(self, delivery: Delivery) -> None:
        async with self._changed:
            record = self._tasks.get(delivery.delivery_id)
            if record is None:
                logger.warning(
                    "Ack for unknown delivery",
                    extra={"delivery_id": delivery.delivery_id},
                )
                return
            now = time.monotonic()
            record.state = TaskState.COMPLETED
            record.completed_at = now
            self._completed.append(record.delivery_id)
            self._drop_expired_completed(now)

    async def extend_lease(self, delivery: Delivery) -> bool:
        # Leases never expire in process; only report whether the task is still held
        record = self._tasks.get(delivery.delivery_id)
        return record is not None and record.state == TaskState.ACTIVE

    async def purge_completed(self) -> int:
        async with self._changed:
            return self._drop_expired_completed(time.monotonic())

    async def nack(self, delivery: Delivery, error: str, retry: bool) -> TaskState:
        async with self._changed:
            record = self._tasks.get(delivery.delivery_id)
            if record is None:
                logger.warning(
                    "Nack for unknown delivery",
                    extra={"delivery_id": delivery.delivery_id},
                )
                return TaskState.ARCHIVED

            record.last_error = error

            if retry and record.retried < record.envelope.max_retry:
                delay = retry_delay_seconds(record.retried, self._backoff_base, self._backoff_max)
                record.retried += 1
                record.state = TaskState.RETRY
                record.ready_at = time.monotonic() + delay
                self._ready[record.envelope.queue].append(record.delivery_id)
                self._changed.notify_all()
                return TaskState.RETRY

            record.state = TaskState.ARCHIVED
            return TaskState.ARCHIVED

    async def requeue(self, delivery: Delivery) -> None:
        async with self._changed:
            record = self._tasks.get(delivery.delivery_id)
            if record is None or record.state != TaskState.ACTIVE:
                return
            record.state = TaskState.PENDING
            record.ready_at = time.monotonic()
            self._ready[record.envelope.queue].appendleft(record.delivery_id)
            self._changed.notify_all()

    async def get_task(self, delivery_id: str) -> TaskInfo | None:
        record = self._tasks.get(delivery_id)
        return record.to_info() if record else None

    async def queue_stats(self) -> list[QueueStats]:
        stats = {queue: QueueStats(queue=queue) for queue in QUEUE_PRIORITY_ORDER}
        for record in self._tasks.values():
            entry = stats[record.envelope.queue]
            setattr(entry, record.state.value, getattr(entry, record.state.value) + 1)
        return list(stats.values())

    async def list_tasks(
        self,
        queue: Queue,
        states: Sequence[TaskState],
        limit: int,
        offset: int,
    ) -> tuple[list[TaskInfo], int]:
        matching = sorted(
            (
                record
                for record in self._tasks.values()
                if record.envelope.queue == queue and record.state in states
            ),
            key=lambda record: record.enqueued_at,
        )
        return [record.to_info() for record in matching[offset:offset + limit]], len(matching)

    async def run_task(self, delivery_id: str) -> TaskInfo | None:
        async with self._changed:
            record = self._tasks.get(delivery_id)
            if record is None or record.state != TaskState.ARCHIVED:
                return None
            record.state = TaskState.PENDING
            record.retried = 0
            record.last_error = None
            record.ready_at = time.monotonic()
            self._ready[record.envelope.queue].append(delivery_id)
            self._changed.notify_all()
            return record.to_info()

    async def delete_task(self, delivery_id: str) -> bool:
        async with self._changed:
            record = self._tasks.get(delivery_id)
            if record is None or record.state == TaskState.ACTIVE:
                return False
            del self._tasks[delivery_id]
            ready = self._ready[record.envelope.queue]
            if delivery_id in ready:
                ready.remove(delivery_id)
            return True

    async def close(self) -> None:
        self._closed = True
        async with self._changed:
            self._changed.notify_all()

    def _drop_expired_completed(self, now: float) -> int:
        dropped = 0
        while self._completed:
            delivery_id = self._completed[0]
            record = self._tasks.get(delivery_id)
            if record is not None and record.state == TaskState.COMPLETED:
                if record.completed_at + self._completed_retention > now:
                    break
                del self._tasks[delivery_id]
                dropped += 1
            self._completed.popleft()
        return dropped

    def _pop_ready(self, queues: Sequence[Queue], now: float) -> _TaskRecord | None:
        for queue in QUEUE_PRIORITY_ORDER:
            if queue not in queues:
                continue
            ready = self._ready[queue]
            for index, delivery_id in enumerate(ready):
                record = self._tasks[delivery_id]
                if record.ready_at <= now:
                    del ready[index]
                    return record
        return None

    def _next_ready_in(self, queues: Sequence[Queue], now: float) -> float:
        upcoming = [
            self._tasks[delivery_id].ready_at - now
            for queue in queues
            for delivery_id in self._ready[queue]
        ]
        return max(0.0, min(upcoming, default=math.inf))
