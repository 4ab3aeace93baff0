"""
Scheduler module.
Contains the process that enqueues cron-scheduled tasks.
"""

from taskflow.scheduler.main import default_schedule, run

__all__ = ["default_schedule", "run"]
