"""
SQLAlchemy database models.
Defines the tasks table backing the durable broker.
"""

from datetime import UTC, datetime
from uuid import UUID as PyUUID
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from taskflow.constants import DEFAULT_MAX_RETRY, Queue, TaskState
from taskflow.types.task import TaskEnvelope, TaskInfo, payload_preview


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Task(Base):
    """
    One enqueued task envelope and its delivery state.

    The broker owns every row: workers only see leased copies and report back
    through ack/nack/requeue.

    Key columns:
    - state follows the TaskState machine
    - available_at delays redelivery after a retryable failure
    - lease_owner and lease_expires_at track the worker slot holding an active task
    """

    __tablename__ = "tasks"

    id: Mapped[PyUUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    # Envelope
    task_type: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    payload: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
        default=b"",
    )
    queue: Mapped[Queue] = mapped_column(
        Enum(Queue, name="task_queue", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=Queue.DEFAULT,
    )
    max_retry: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_RETRY,
    )
    timeout_seconds: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )

    # Delivery state
    state: Mapped[TaskState] = mapped_column(
        Enum(TaskState, name="task_state", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TaskState.PENDING,
        index=True,
    )
    retried: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Lease management
    lease_owner: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    __table_args__ = (
        # Index for dequeue polling
        Index(
            "ix_tasks_dequeue_poll",
            "queue",
            "available_at",
            postgresql_where=(Column("state").in_([TaskState.PENDING.value, TaskState.RETRY.value])),
        ),
        # Index for lease expiry checks
        Index(
            "ix_tasks_lease_expiry",
            "lease_expires_at",
            postgresql_where=(Column("state") == TaskState.ACTIVE.value),
        ),
        # Index for purging completed tasks
        Index(
            "ix_tasks_completed_purge",
            "completed_at",
            postgresql_where=(Column("state") == TaskState.COMPLETED.value),
        ),
        # Index for inspection listings
        Index("ix_tasks_queue_state", "queue", "state", "created_at"),
    )

    @property
    def envelope(self) -> TaskEnvelope:
        """Rebuild the envelope this row was created from."""
        return TaskEnvelope(
            type=self.task_type,
            payload=self.payload,
            queue=self.queue,
            max_retry=self.max_retry,
            timeout_seconds=self.timeout_seconds,
        )

    @property
    def is_lease_expired(self) -> bool:
        """Check if the task's lease has expired."""
        if self.lease_expires_at is None:
            return True
        return datetime.now(UTC) > self.lease_expires_at

    def to_info(self) -> TaskInfo:
        next_process_at = None
        if self.state in (TaskState.PENDING, TaskState.RETRY):
            next_process_at = self.available_at
        return TaskInfo(
            delivery_id=str(self.id),
            type=self.task_type,
            queue=self.queue,
            state=self.state,
            max_retry=self.max_retry,
            retried=self.retried,
            last_error=self.last_error,
            enqueued_at=self.created_at,
            next_process_at=next_process_at,
            payload_preview=payload_preview(self.payload),
        )

    def __repr__(self) -> str:
        return (
            f"Task(id={self.id}, type={self.task_type}, queue={self.queue}, "
            f"state={self.state}, retried={self.retried}/{self.max_retry})"
        )
