"""
Inspection type definitions.
Read models returned by the queue inspector.
"""

from pydantic import BaseModel

from taskflow.types.task import QueueStats, TaskInfo


class AggregateStats(BaseModel):
    """Task counts summed over all queues."""

    total_size: int = 0
    total_pending: int = 0
    total_active: int = 0
    total_retry: int = 0
    total_archived: int = 0
    total_completed: int = 0


class QueueOverview(BaseModel):
    """Per-queue statistics plus their aggregate."""

    queues: list[QueueStats]
    aggregate: AggregateStats


class TaskPage(BaseModel):
    """Paginated list of tasks."""

    tasks: list[TaskInfo]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
