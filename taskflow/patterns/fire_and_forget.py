"""
Fire-and-forget dispatch.

Submits a task in the background and returns to the caller immediately. The
caller never sees the outcome: failures and timeouts are logged, never raised.
"""

import asyncio
import logging

from taskflow.broker.base import TaskEnqueuer
from taskflow.config import get_settings
from taskflow.constants import Queue
from taskflow.types.task import TaskEnvelope, TaskInfo

logger = logging.getLogger(__name__)


class FireAndForget:
    """
    Background submitter for best-effort work such as notifications.

    Every submission is bounded by ``timeout`` seconds and defaults to the low
    queue. Pending submissions are held by strong reference until done.
    """

    def __init__(self, enqueuer: TaskEnqueuer, timeout: float | None = None):
        self._enqueuer = enqueuer
        self._timeout = timeout or get_settings().fire_and_forget_timeout_seconds
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of submissions not finished yet."""
        return len(self._tasks)

    def submit(
        self,
        envelope: TaskEnvelope,
        queue: Queue | None = Queue.LOW,
    ) -> "asyncio.Task[TaskInfo | None]":
        """
        Enqueue in the background.

        Args:
            envelope: Task to submit.
            queue: Queue override; None keeps the envelope's own queue.

        Returns:
            The background task. Awaiting it is optional; it resolves to the
            TaskInfo, or None if the submission failed.
        """
        if queue is not None:
            envelope = envelope.with_queue(queue)

        task = asyncio.create_task(self._enqueue(envelope), name=f"fire-and-forget:{envelope.type}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _enqueue(self, envelope: TaskEnvelope) -> TaskInfo | None:
        try:
            async with asyncio.timeout(self._timeout):
                return await self._enqueuer.enqueue(envelope)
        except TimeoutError:
            logger.warning(
                "Fire-and-forget enqueue timed out",
                extra={"task_type": envelope.type, "queue": envelope.queue, "timeout": self._timeout},
            )
        except Exception as e:
            logger.error(
                "Fire-and-forget enqueue failed",
                extra={"task_type": envelope.type, "queue": envelope.queue, "error": str(e)},
            )
        return None

    async def drain(self, timeout: float | None = None) -> None:
        """
        Wait for outstanding submissions, e.g. at shutdown.

        Submissions still running after ``timeout`` seconds are cancelled.
        """
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("Cancelling unfinished fire-and-forget submissions", extra={"count": len(pending)})
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
