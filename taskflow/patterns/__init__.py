"""
Dispatch patterns built on the enqueue client.
"""

from taskflow.patterns.fanout import (
    Fanout,
    FanoutDispatcher,
    FanoutHandler,
    FanoutRegistry,
    fanout_task_type,
    parse_fanout_task_type,
)
from taskflow.patterns.fire_and_forget import FireAndForget
from taskflow.patterns.scheduled import (
    ScheduleEntry,
    ScheduleFiring,
    Scheduler,
    next_fire_time,
    validate_cronspec,
)

__all__ = [
    "FireAndForget",
    "ScheduleEntry",
    "ScheduleFiring",
    "Scheduler",
    "next_fire_time",
    "validate_cronspec",
    "Fanout",
    "FanoutDispatcher",
    "FanoutHandler",
    "FanoutRegistry",
    "fanout_task_type",
    "parse_fanout_task_type",
]
