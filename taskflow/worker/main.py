"""
Worker process for executing tasks.

Wires the durable broker, the Redis idempotency store and the built-in task
handlers into a WorkerServer and runs it until SIGTERM/SIGINT.
"""

import asyncio
import logging
import signal

from taskflow.broker.postgres import PostgresBroker
from taskflow.config import get_settings
from taskflow.db import close_db, init_db
from taskflow.idempotency import IdempotencyConfig, RedisIdempotencyStore
from taskflow.observability.logging import setup_logging
from taskflow.observability.metrics import setup_metrics, start_metrics_server
from taskflow.observability.tracing import setup_tracing
from taskflow.worker.middleware import default_middlewares
from taskflow.worker.server import WorkerServer
from taskflow.worker.tasks import TYPE_CLEANUP_OLD_NOTES, TYPE_NOTE_ARCHIVE, register_tasks

logger = logging.getLogger(__name__)


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()

    setup_logging()
    setup_tracing()
    metrics = setup_metrics()
    start_metrics_server(settings.prometheus_port)

    session_factory = await init_db()
    broker = PostgresBroker(session_factory)
    store = RedisIdempotencyStore.from_url(settings.redis_url)

    if not await store.ping():
        logger.warning(
            "Idempotency store unreachable at startup",
            extra={"fail_mode": settings.idempotency_fail_mode},
        )

    server = WorkerServer(
        broker,
        required_task_types=(TYPE_NOTE_ARCHIVE, TYPE_CLEANUP_OLD_NOTES),
        worker_id=broker.worker_id,
    )
    server.use(*default_middlewares(metrics=metrics))
    register_tasks(server, store, IdempotencyConfig.from_settings(settings))

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(server.shutdown())
        )

    try:
        await server.run()
    finally:
        await store.close()
        await broker.close()
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
