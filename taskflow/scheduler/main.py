"""
Scheduler process.

Enqueues the periodic tasks of the application on their cron schedule. Run
exactly one scheduler per deployment; workers process what it enqueues.
"""

import asyncio
import logging
import signal

from taskflow.broker.postgres import PostgresBroker
from taskflow.client import EnqueueClient
from taskflow.db import close_db, init_db
from taskflow.observability.logging import setup_logging
from taskflow.observability.tracing import setup_tracing
from taskflow.patterns.scheduled import ScheduleEntry, Scheduler
from taskflow.worker.tasks import CLEANUP_SCHEDULE, new_cleanup_old_notes_task

logger = logging.getLogger(__name__)


def default_schedule() -> list[ScheduleEntry]:
    """The periodic tasks registered at startup."""
    return [
        ScheduleEntry(
            cronspec=CLEANUP_SCHEDULE,
            envelope=new_cleanup_old_notes_task(),
            description="Daily cleanup of notes archived more than 30 days ago",
            entry_id="cleanup-old-notes",
        ),
    ]


async def run_async() -> None:
    """Run the scheduler asynchronously."""
    setup_logging()
    setup_tracing()

    session_factory = await init_db()
    client = EnqueueClient(PostgresBroker(session_factory))

    scheduler = Scheduler(client)
    scheduler.register_all(default_schedule())

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, scheduler.stop)

    try:
        await scheduler.run()
    finally:
        await client.close()
        await close_db()


def run() -> None:
    """Run the scheduler."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
