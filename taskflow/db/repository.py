"""
Task repository for database operations.
Implements the data access patterns behind the durable broker.
"""

import logging
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.constants import QUEUE_WEIGHTS, Queue, TaskState
from taskflow.db.models import Task
from taskflow.types.task import TaskEnvelope

logger = logging.getLogger(__name__)

# States a worker may lease from
_READY_STATES = (TaskState.PENDING, TaskState.RETRY)


class TaskRepository:
    """
    Repository for task database operations.

    Implements atomic operations for:
    - Task insertion
    - Lease acquisition with FOR UPDATE SKIP LOCKED, and heartbeat extension
    - Completion, retry scheduling and archiving
    - Lease expiry handling and purging of completed rows
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_task(self, envelope: TaskEnvelope) -> Task:
        """
        Insert a new pending task.

        Args:
            envelope: The task envelope.

        Returns:
            The created Task.
        """
        now = datetime.now(UTC)
        task = Task(
            task_type=envelope.type,
            payload=envelope.payload,
            queue=envelope.queue,
            max_retry=envelope.max_retry,
            timeout_seconds=envelope.timeout_seconds,
            state=TaskState.PENDING,
            retried=0,
            available_at=now,
            created_at=now,
            updated_at=now,
        )
        self._session.add(task)
        await self._session.flush()
        return task

    async def get_task(self, task_id: UUID) -> Task | None:
        """
        Get a task by ID.

        Args:
            task_id: The task UUID.

        Returns:
            The Task or None if not found.
        """
        stmt = select(Task).where(Task.id == task_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def acquire_lease(
        self,
        worker_id: str,
        queues: Sequence[Queue],
        lease_duration: timedelta,
    ) -> Task | None:
        """
        Lease the next ready task using FOR UPDATE SKIP LOCKED.

        This is the critical path for task distribution. Higher priority
        queues are always drained first; within a queue, the task that
        became ready earliest wins.

        Args:
            worker_id: The worker identifier.
            queues: Queues this worker consumes.
            lease_duration: How long the lease is valid before the reaper reclaims it.

        Returns:
            The leased task, or None if nothing is ready.
        """
        now = datetime.now(UTC)
        priority = case(
            dict(QUEUE_WEIGHTS),
            value=Task.queue,
            else_=0,
        )

        candidate = (
            select(Task.id)
            .where(
                and_(
                    Task.state.in_(_READY_STATES),
                    Task.queue.in_(list(queues)),
                    Task.available_at <= now,
                )
            )
            .order_by(priority.desc(), Task.available_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )

        stmt = (
            update(Task)
            .where(Task.id.in_(candidate))
            .values(
                state=TaskState.ACTIVE,
                lease_owner=worker_id,
                lease_expires_at=now + lease_duration,
                updated_at=now,
            )
            .returning(Task)
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        task = result.scalar_one_or_none()

        if task is not None:
            logger.debug(
                "Acquired lease",
                extra={"delivery_id": str(task.id), "worker_id": worker_id},
            )

        return task

    async def extend_lease(self, task_id: UUID, worker_id: str, lease_duration: timedelta) -> bool:
        """
        Push the lease expiry of a task this worker still holds (heartbeat).

        Returns:
            True if the lease was extended, False if it was lost.
        """
        now = datetime.now(UTC)
        stmt = (
            update(Task)
            .where(
                and_(
                    Task.id == task_id,
                    Task.state == TaskState.ACTIVE,
                    Task.lease_owner == worker_id,
                )
            )
            .values(lease_expires_at=now + lease_duration, updated_at=now)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def complete_task(self, task_id: UUID, worker_id: str) -> bool:
        """
        Mark an active task as completed.

        Returns:
            True if the worker still held the lease.
        """
        now = datetime.now(UTC)
        stmt = (
            update(Task)
            .where(
                and_(
                    Task.id == task_id,
                    Task.state == TaskState.ACTIVE,
                    Task.lease_owner == worker_id,
                )
            )
            .values(
                state=TaskState.COMPLETED,
                completed_at=now,
                updated_at=now,
                lease_owner=None,
                lease_expires_at=None,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def fail_task(
        self,
        task_id: UUID,
        worker_id: str,
        error: str,
        retry: bool,
        retry_delay: timedelta,
    ) -> TaskState | None:
        """
        Handle a failed delivery. Either schedule a retry or archive.

        Args:
            task_id: The task UUID.
            worker_id: The worker identifier.
            error: Error message.
            retry: Whether the failure is retryable at all.
            retry_delay: Backoff before the next delivery.

        Returns:
            The resulting state, or None if the worker no longer owns the lease.
        """
        task = await self.get_task(task_id)
        if task is None or task.state != TaskState.ACTIVE or task.lease_owner != worker_id:
            logger.warning(
                "Worker doesn't own task lease",
                extra={"delivery_id": str(task_id), "worker_id": worker_id},
            )
            return None

        now = datetime.now(UTC)

        if retry and task.retried < task.max_retry:
            values = {
                "state": TaskState.RETRY,
                "retried": task.retried + 1,
                "available_at": now + retry_delay,
            }
        else:
            values = {
                "state": TaskState.ARCHIVED,
                "completed_at": now,
            }

        stmt = (
            update(Task)
            .where(
                and_(
                    Task.id == task_id,
                    Task.state == TaskState.ACTIVE,
                    Task.lease_owner == worker_id,
                )
            )
            .values(
                **values,
                last_error=error,
                updated_at=now,
                lease_owner=None,
                lease_expires_at=None,
            )
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            return None
        return values["state"]

    async def requeue_task(self, task_id: UUID, worker_id: str) -> bool:
        """
        Return an active task to pending without spending a retry.

        Returns:
            True if the task was requeued.
        """
        now = datetime.now(UTC)
        stmt = (
            update(Task)
            .where(
                and_(
                    Task.id == task_id,
                    Task.state == TaskState.ACTIVE,
                    Task.lease_owner == worker_id,
                )
            )
            .values(
                state=TaskState.PENDING,
                available_at=now,
                updated_at=now,
                lease_owner=None,
                lease_expires_at=None,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def list_tasks(
        self,
        queue: Queue,
        states: Sequence[TaskState],
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Task], int]:
        """
        List tasks of one queue in the given states, oldest first.

        Returns:
            Tuple of (tasks, total_count).
        """
        base_filter = and_(Task.queue == queue, Task.state.in_(list(states)))

        count_stmt = select(func.count()).select_from(Task).where(base_filter)
        count_result = await self._session.execute(count_stmt)
        total = count_result.scalar() or 0

        stmt = (
            select(Task)
            .where(base_filter)
            .order_by(Task.created_at.asc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def run_archived(self, task_id: UUID) -> Task | None:
        """
        Move an archived task back to pending with a fresh retry budget.

        Returns:
            Updated Task or None if not found or not archived.
        """
        now = datetime.now(UTC)
        stmt = (
            update(Task)
            .where(and_(Task.id == task_id, Task.state == TaskState.ARCHIVED))
            .values(
                state=TaskState.PENDING,
                retried=0,
                last_error=None,
                completed_at=None,
                available_at=now,
                updated_at=now,
            )
            .returning(Task)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        task = result.scalar_one_or_none()

        if task:
            logger.info("Archived task requeued", extra={"delivery_id": str(task_id)})

        return task

    async def delete_task(self, task_id: UUID) -> bool:
        """Delete a task that is not currently leased."""
        stmt = delete(Task).where(and_(Task.id == task_id, Task.state != TaskState.ACTIVE))
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def recover_expired_leases(self) -> int:
        """
        Recover tasks with expired leases.

        This is called by the reaper to handle worker crashes.
        Active tasks whose lease ran out are returned to pending.

        Returns:
            Number of recovered tasks.
        """
        now = datetime.now(UTC)

        stmt = (
            update(Task)
            .where(
                and_(
                    Task.state == TaskState.ACTIVE,
                    Task.lease_expires_at < now,
                )
            )
            .values(
                state=TaskState.PENDING,
                available_at=now,
                lease_owner=None,
                lease_expires_at=None,
                updated_at=now,
            )
        )

        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info("Recovered tasks with expired leases", extra={"count": count})

        return count

    async def purge_completed(self, completed_before: datetime) -> int:
        """
        Delete completed tasks finished before a cutoff.

        Returns:
            Number of deleted rows.
        """
        stmt = delete(Task).where(
            and_(
                Task.state == TaskState.COMPLETED,
                Task.completed_at < completed_before,
            )
        )
        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info("Purged completed tasks", extra={"count": count})

        return count

    async def get_queue_stats(self) -> dict[tuple[Queue, TaskState], int]:
        """
        Get task counts grouped by queue and state.

        Returns:
            Dictionary of (queue, state) -> count.
        """
        stmt = select(Task.queue, Task.state, func.count()).group_by(Task.queue, Task.state)
        result = await self._session.execute(stmt)
        return {(queue, state): count for queue, state, count in result.all()}
