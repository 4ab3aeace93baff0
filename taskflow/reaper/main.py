"""
Lease reaper and housekeeping for the PostgreSQL broker.

The reaper runs periodically to:
- return active tasks whose lease ran out to their queue (worker crashes),
  which keeps delivery at-least-once
- delete completed tasks past their retention period
- refresh the queue depth gauge exported on its metrics port
"""

import asyncio
import logging
import signal

from taskflow.broker.postgres import PostgresBroker
from taskflow.config import get_settings
from taskflow.db import close_db, init_db
from taskflow.errors import InfrastructureError
from taskflow.observability.logging import setup_logging
from taskflow.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
    start_metrics_server,
)

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that recovers expired task leases.

    Each pass:
    1. Finds tasks in ACTIVE state with an expired lease_expires_at
    2. Returns them to PENDING for redelivery (no retry is spent)
    3. Purges completed tasks older than the broker's retention
    4. Records metrics for monitoring
    """

    def __init__(
        self,
        broker: PostgresBroker,
        interval_seconds: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            broker: The durable broker whose leases are checked.
            interval_seconds: Seconds between reaper runs.
            metrics: Collector for recovered lease counts and queue depth.
        """
        settings = get_settings()
        self._broker = broker
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self._metrics = metrics or get_metrics()
        self._stop = asyncio.Event()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info("Reaper starting", extra={"interval": self.interval})
        self._stop.clear()

        while not self._stop.is_set():
            try:
                await self.run_once()
            except InfrastructureError:
                logger.exception("Error in reaper loop")

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._stop.set()

    async def run_once(self) -> int:
        """
        Run one pass (for testing or cron-style execution).

        Returns:
            Number of tasks recovered from expired leases.
        """
        count = await self._broker.recover_expired_leases()
        if count > 0:
            self._metrics.record_lease_expired(count)
            logger.info("Recovered expired leases", extra={"count": count})

        purged = await self._broker.purge_completed()
        if purged > 0:
            logger.info("Purged completed tasks", extra={"count": purged})

        await self.refresh_queue_depth()
        return count

    async def refresh_queue_depth(self) -> None:
        for stats in await self._broker.queue_stats():
            self._metrics.update_queue_depth(stats)


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()

    setup_logging()
    metrics = setup_metrics()
    start_metrics_server(settings.reaper_prometheus_port)
    session_factory = await init_db()

    reaper = Reaper(PostgresBroker(session_factory), metrics=metrics)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
