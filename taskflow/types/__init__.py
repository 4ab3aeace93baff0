"""
Type definitions for the task execution core.
Contains input/output type definitions grouped by concern.
"""

from taskflow.types.events import (
    FanoutEvent,
    FanoutResult,
)
from taskflow.types.inspection import (
    AggregateStats,
    QueueOverview,
    TaskPage,
)
from taskflow.types.task import (
    Delivery,
    QueueStats,
    TaskContext,
    TaskEnvelope,
    TaskInfo,
    decode_payload,
    payload_preview,
)

__all__ = [
    # Task types
    "TaskEnvelope",
    "TaskInfo",
    "TaskContext",
    "Delivery",
    "QueueStats",
    "decode_payload",
    "payload_preview",
    # Event types
    "FanoutEvent",
    "FanoutResult",
    # Inspection types
    "AggregateStats",
    "QueueOverview",
    "TaskPage",
]
