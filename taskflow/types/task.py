"""
Task-related type definitions.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from taskflow.constants import (
    DEFAULT_MAX_RETRY,
    DEFAULT_QUEUE,
    PAYLOAD_PREVIEW_LENGTH,
    TASK_TYPE_PATTERN,
    Queue,
    TaskState,
)
from taskflow.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class TaskEnvelope(BaseModel):
    """
    A unit of work submitted to the broker.

    The payload is opaque to the transport; handlers validate it on receipt.
    """

    model_config = ConfigDict(frozen=True)

    type: str = Field(pattern=TASK_TYPE_PATTERN, max_length=255)
    payload: bytes = b""
    queue: Queue = DEFAULT_QUEUE
    max_retry: int = Field(default=DEFAULT_MAX_RETRY, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)

    @classmethod
    def from_model(
        cls,
        task_type: str,
        model: BaseModel,
        queue: Queue = DEFAULT_QUEUE,
        max_retry: int = DEFAULT_MAX_RETRY,
        timeout_seconds: float | None = None,
    ) -> "TaskEnvelope":
        """Build an envelope whose payload is the JSON encoding of a pydantic model."""
        return cls(
            type=task_type,
            payload=model.model_dump_json().encode(),
            queue=queue,
            max_retry=max_retry,
            timeout_seconds=timeout_seconds,
        )

    def with_queue(self, queue: Queue) -> "TaskEnvelope":
        """Return a copy routed to another queue."""
        return self.model_copy(update={"queue": Queue(queue)})


def decode_payload(model_cls: type[ModelT], payload: bytes) -> ModelT:
    """
    Decode a JSON payload into a pydantic model.

    Raises:
        ValidationError: If the payload is malformed. Never retried.
    """
    try:
        return model_cls.model_validate_json(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            f"malformed {model_cls.__name__} payload",
            details={"errors": e.errors(include_url=False, include_input=False)},
        ) from e


def payload_preview(payload: bytes) -> str:
    """Printable prefix of a payload for inspection output."""
    text = payload.decode("utf-8", errors="replace")
    if len(text) > PAYLOAD_PREVIEW_LENGTH:
        return text[:PAYLOAD_PREVIEW_LENGTH] + "..."
    return text


class TaskInfo(BaseModel):
    """
    Broker view of an enqueued task.
    Returned by enqueue and by the queue inspector.
    """

    delivery_id: str
    type: str
    queue: Queue
    state: TaskState
    max_retry: int
    retried: int = 0
    last_error: str | None = None
    enqueued_at: datetime
    next_process_at: datetime | None = None
    payload_preview: str = ""


class QueueStats(BaseModel):
    """Task counts per state for one queue."""

    queue: Queue
    pending: int = 0
    active: int = 0
    retry: int = 0
    archived: int = 0
    completed: int = 0

    @property
    def size(self) -> int:
        """Tasks still owned by the queue (everything not completed)."""
        return self.pending + self.active + self.retry + self.archived


@dataclass
class Delivery:
    """
    One leased hand-out of a task to a worker slot.
    Handed back to the broker on ack, nack or requeue.
    """

    delivery_id: str
    envelope: TaskEnvelope
    retried: int
    enqueued_at: datetime
    lease_owner: str | None = None


@dataclass
class TaskContext:
    """
    Context passed to task handlers during execution.
    Contains delivery metadata and the cooperative cancellation signal.
    """

    delivery_id: str
    task_type: str
    queue: Queue
    retry_count: int
    max_retry: int
    timeout_seconds: float | None = None
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def for_delivery(cls, delivery: Delivery, timeout_seconds: float | None = None) -> "TaskContext":
        envelope = delivery.envelope
        return cls(
            delivery_id=delivery.delivery_id,
            task_type=envelope.type,
            queue=envelope.queue,
            retry_count=delivery.retried,
            max_retry=envelope.max_retry,
            timeout_seconds=envelope.timeout_seconds or timeout_seconds,
        )

    @property
    def is_last_attempt(self) -> bool:
        """Check if a failure now would archive the task."""
        return self.retry_count >= self.max_retry

    @property
    def remaining_retries(self) -> int:
        """Get remaining redeliveries after this attempt."""
        return max(0, self.max_retry - self.retry_count)

    @property
    def is_cancelled(self) -> bool:
        """True once the worker is shutting down; handlers should stop cleanly."""
        return self.cancelled.is_set()
