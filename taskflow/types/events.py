"""
Event type definitions for the fanout pattern.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from taskflow.types.task import TaskInfo


class FanoutEvent(BaseModel):
    """
    Event broadcast to every handler registered for its type.
    Each handler receives its own copy in a separate task.
    """

    type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime | None = None

    def stamped(self) -> "FanoutEvent":
        """Return the event with its timestamp set to now (UTC) if missing."""
        if self.timestamp is not None:
            return self
        return self.model_copy(update={"timestamp": datetime.now(UTC)})


@dataclass
class FanoutResult:
    """
    Outcome of enqueueing one handler's copy of an event.
    Exactly one of info or error is set.
    """

    handler_id: str
    task_type: str
    info: TaskInfo | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
