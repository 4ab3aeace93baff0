"""
Integration tests for the PostgreSQL broker.

These tests require a running PostgreSQL database (TEST_DATABASE_URL) and are
skipped when it is unreachable.
"""

import asyncio
from uuid import uuid4

import pytest
import pytest_asyncio

from taskflow.broker.postgres import PostgresBroker
from taskflow.constants import QUEUE_PRIORITY_ORDER, Queue, TaskState
from taskflow.errors import TransientError
from taskflow.reaper.main import Reaper
from taskflow.types.task import TaskEnvelope
from taskflow.worker import WorkerServer

ALL_QUEUES = list(QUEUE_PRIORITY_ORDER)


def envelope(queue: Queue = Queue.DEFAULT, max_retry: int = 3) -> TaskEnvelope:
    return TaskEnvelope(type="email:send", payload=b'{"to": "a@example.com"}', queue=queue, max_retry=max_retry)


def make_broker(session_factory, worker_id: str = "worker-1", **kwargs) -> PostgresBroker:
    options = {
        "lease_duration_seconds": 30,
        "poll_interval": 0.01,
        "retry_backoff_base": 0,
    }
    options.update(kwargs)
    return PostgresBroker(session_factory, worker_id=worker_id, **options)


class TestPostgresBroker:
    """Tests for PostgresBroker against a real database."""

    @pytest_asyncio.fixture
    async def pg_broker(self, session_factory):
        return make_broker(session_factory)

    @pytest.mark.asyncio
    async def test_enqueue_and_get(self, pg_broker):
        """Test a task is stored pending with its metadata."""
        info = await pg_broker.enqueue(envelope(queue=Queue.LOW, max_retry=5))

        stored = await pg_broker.get_task(info.delivery_id)

        assert stored.state == TaskState.PENDING
        assert stored.queue == Queue.LOW
        assert stored.max_retry == 5
        assert stored.payload_preview.startswith('{"to"')

    @pytest.mark.asyncio
    async def test_get_unknown_or_malformed_id(self, pg_broker):
        assert await pg_broker.get_task(str(uuid4())) is None
        assert await pg_broker.get_task("not-a-uuid") is None

    @pytest.mark.asyncio
    async def test_dequeue_leases_task(self, pg_broker):
        info = await pg_broker.enqueue(envelope())

        delivery = await pg_broker.dequeue(ALL_QUEUES, timeout=0)

        assert delivery.delivery_id == info.delivery_id
        assert delivery.envelope.payload == b'{"to": "a@example.com"}'
        assert delivery.lease_owner == "worker-1"
        assert (await pg_broker.get_task(info.delivery_id)).state == TaskState.ACTIVE

    @pytest.mark.asyncio
    async def test_dequeue_empty(self, pg_broker):
        assert await pg_broker.dequeue(ALL_QUEUES, timeout=0.03) is None

    @pytest.mark.asyncio
    async def test_strict_priority(self, pg_broker):
        low = await pg_broker.enqueue(envelope(queue=Queue.LOW))
        default = await pg_broker.enqueue(envelope(queue=Queue.DEFAULT))
        critical = await pg_broker.enqueue(envelope(queue=Queue.CRITICAL))

        order = [(await pg_broker.dequeue(ALL_QUEUES, timeout=0)).delivery_id for _ in range(3)]

        assert order == [critical.delivery_id, default.delivery_id, low.delivery_id]

    @pytest.mark.asyncio
    async def test_concurrent_dequeue_no_double_delivery(self, session_factory):
        """Test concurrent workers never lease the same task."""
        brokers = [make_broker(session_factory, worker_id=f"worker-{i}") for i in range(5)]
        for _ in range(10):
            await brokers[0].enqueue(envelope())

        async def lease_all(broker):
            leased = []
            while (delivery := await broker.dequeue(ALL_QUEUES, timeout=0)) is not None:
                leased.append(delivery.delivery_id)
            return leased

        results = await asyncio.gather(*(lease_all(b) for b in brokers))
        leased = [delivery_id for batch in results for delivery_id in batch]

        assert len(leased) == 10
        assert len(set(leased)) == 10

    @pytest.mark.asyncio
    async def test_ack(self, pg_broker):
        await pg_broker.enqueue(envelope())
        delivery = await pg_broker.dequeue(ALL_QUEUES, timeout=0)

        await pg_broker.ack(delivery)

        assert (await pg_broker.get_task(delivery.delivery_id)).state == TaskState.COMPLETED

    @pytest.mark.asyncio
    async def test_nack_retries_then_archives(self, pg_broker):
        """Test max_retry=1 gives two deliveries before archiving."""
        info = await pg_broker.enqueue(envelope(max_retry=1))

        first = await pg_broker.dequeue(ALL_QUEUES, timeout=0)
        assert await pg_broker.nack(first, "smtp down", retry=True) == TaskState.RETRY

        second = await pg_broker.dequeue(ALL_QUEUES, timeout=0)
        assert second.retried == 1
        assert await pg_broker.nack(second, "smtp down", retry=True) == TaskState.ARCHIVED

        stored = await pg_broker.get_task(info.delivery_id)
        assert stored.state == TaskState.ARCHIVED
        assert stored.last_error == "smtp down"

    @pytest.mark.asyncio
    async def test_nack_not_retryable(self, pg_broker):
        await pg_broker.enqueue(envelope(max_retry=5))
        delivery = await pg_broker.dequeue(ALL_QUEUES, timeout=0)

        assert await pg_broker.nack(delivery, "bad payload", retry=False) == TaskState.ARCHIVED

    @pytest.mark.asyncio
    async def test_retry_backoff_delays_redelivery(self, session_factory):
        broker = make_broker(session_factory, retry_backoff_base=60)
        await broker.enqueue(envelope())
        delivery = await broker.dequeue(ALL_QUEUES, timeout=0)
        await broker.nack(delivery, "later", retry=True)

        assert await broker.dequeue(ALL_QUEUES, timeout=0) is None

    @pytest.mark.asyncio
    async def test_requeue(self, pg_broker):
        await pg_broker.enqueue(envelope())
        delivery = await pg_broker.dequeue(ALL_QUEUES, timeout=0)

        await pg_broker.requeue(delivery)

        again = await pg_broker.dequeue(ALL_QUEUES, timeout=0)
        assert again.delivery_id == delivery.delivery_id
        assert again.retried == 0

    @pytest.mark.asyncio
    async def test_queue_stats_and_listing(self, pg_broker):
        for _ in range(3):
            await pg_broker.enqueue(envelope(queue=Queue.LOW))
        delivery = await pg_broker.dequeue([Queue.LOW], timeout=0)
        await pg_broker.nack(delivery, "bad", retry=False)

        stats = {s.queue: s for s in await pg_broker.queue_stats()}
        pending, total = await pg_broker.list_tasks(Queue.LOW, [TaskState.PENDING], limit=1, offset=0)

        assert stats[Queue.LOW].pending == 2
        assert stats[Queue.LOW].archived == 1
        assert stats[Queue.CRITICAL].size == 0
        assert total == 2
        assert len(pending) == 1

    @pytest.mark.asyncio
    async def test_run_and_delete_archived(self, pg_broker):
        await pg_broker.enqueue(envelope(max_retry=0))
        delivery = await pg_broker.dequeue(ALL_QUEUES, timeout=0)
        await pg_broker.nack(delivery, "boom", retry=True)

        info = await pg_broker.run_task(delivery.delivery_id)
        assert info.state == TaskState.PENDING
        assert info.last_error is None

        assert await pg_broker.run_task(delivery.delivery_id) is None
        assert await pg_broker.delete_task(delivery.delivery_id) is True
        assert await pg_broker.get_task(delivery.delivery_id) is None


class TestLeaseRecovery:
    """Tests for lease expiry and the reaper."""

    @pytest.mark.asyncio
    async def test_expired_lease_recovered_without_spending_retry(self, session_factory, metrics):
        """Test a crashed worker's task is returned to pending by the reaper."""
        crashed = make_broker(session_factory, worker_id="crashed", lease_duration_seconds=0.05)
        survivor = make_broker(session_factory, worker_id="survivor")
        info = await crashed.enqueue(envelope())
        lost = await crashed.dequeue(ALL_QUEUES, timeout=0)

        await asyncio.sleep(0.1)
        recovered = await Reaper(survivor, interval_seconds=1, metrics=metrics).run_once()

        assert recovered == 1
        assert metrics.registry.get_sample_value("leases_expired_total") == 1
        delivery = await survivor.dequeue(ALL_QUEUES, timeout=0)
        assert delivery.delivery_id == info.delivery_id
        assert delivery.retried == 0

        # The original worker lost its lease and can no longer complete the task
        await crashed.ack(lost)
        assert (await survivor.get_task(info.delivery_id)).state == TaskState.ACTIVE

    @pytest.mark.asyncio
    async def test_live_lease_not_recovered(self, session_factory, metrics):
        broker = make_broker(session_factory)
        await broker.enqueue(envelope())
        await broker.dequeue(ALL_QUEUES, timeout=0)

        assert await Reaper(broker, interval_seconds=1, metrics=metrics).run_once() == 0

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_long_task_from_reaper(self, session_factory, metrics):
        """Test a handler outliving one lease period is neither reclaimed nor run twice."""
        broker = make_broker(session_factory, lease_duration_seconds=0.3)
        reaper = Reaper(broker, interval_seconds=1, metrics=metrics)
        server = WorkerServer(
            broker,
            concurrency=2,
            poll_interval=0.01,
            heartbeat_interval=0.05,
            worker_id="worker-1",
        )
        runs: list[str] = []
        done = asyncio.Event()

        @server.handler("report:build")
        async def handler(ctx, payload):
            runs.append(ctx.delivery_id)
            await asyncio.sleep(0.8)
            done.set()

        info = await broker.enqueue(TaskEnvelope(type="report:build", timeout_seconds=5))
        await server.start()
        recovered = 0
        try:
            while not done.is_set():
                recovered += await reaper.run_once()
                await asyncio.sleep(0.05)
        finally:
            await server.shutdown()

        assert recovered == 0
        assert runs == [info.delivery_id]
        assert (await broker.get_task(info.delivery_id)).state == TaskState.COMPLETED

    @pytest.mark.asyncio
    async def test_extend_lease_fails_once_reclaimed(self, session_factory, metrics):
        crashed = make_broker(session_factory, worker_id="crashed", lease_duration_seconds=0.05)
        await crashed.enqueue(envelope())
        lost = await crashed.dequeue(ALL_QUEUES, timeout=0)

        assert await crashed.extend_lease(lost) is True

        await asyncio.sleep(0.1)
        await Reaper(crashed, interval_seconds=1, metrics=metrics).run_once()

        assert await crashed.extend_lease(lost) is False

    @pytest.mark.asyncio
    async def test_reaper_purges_completed_past_retention(self, session_factory, metrics):
        """Test completed rows are deleted once retention has passed."""
        broker = make_broker(session_factory, completed_retention_seconds=0.5)
        done = await broker.enqueue(envelope())
        waiting = await broker.enqueue(envelope(queue=Queue.LOW))
        await broker.ack(await broker.dequeue([Queue.DEFAULT], timeout=0))

        await Reaper(broker, interval_seconds=1, metrics=metrics).run_once()
        assert (await broker.get_task(done.delivery_id)).state == TaskState.COMPLETED

        await asyncio.sleep(0.6)
        await Reaper(broker, interval_seconds=1, metrics=metrics).run_once()

        assert await broker.get_task(done.delivery_id) is None
        assert (await broker.get_task(waiting.delivery_id)).state == TaskState.PENDING

    @pytest.mark.asyncio
    async def test_reaper_refreshes_queue_depth(self, session_factory, metrics):
        broker = make_broker(session_factory)
        await broker.enqueue(envelope(queue=Queue.LOW))
        await broker.enqueue(envelope(queue=Queue.LOW))

        await Reaper(broker, interval_seconds=1, metrics=metrics).run_once()

        depth = metrics.registry.get_sample_value("task_queue_depth", {"queue": "low", "state": "pending"})
        assert depth == 2

    @pytest.mark.asyncio
    async def test_reaper_loop_stops(self, session_factory, metrics):
        reaper = Reaper(make_broker(session_factory), interval_seconds=0.01, metrics=metrics)

        runner = asyncio.create_task(reaper.start())
        await asyncio.sleep(0.03)
        await reaper.stop()

        await asyncio.wait_for(runner, timeout=1)


class TestWorkerWithPostgres:
    """End-to-end processing through the durable broker."""

    @pytest.mark.asyncio
    async def test_worker_processes_and_retries(self, session_factory):
        broker = make_broker(session_factory)
        server = WorkerServer(broker, concurrency=2, poll_interval=0.01, worker_id="worker-1")
        attempts: dict[str, int] = {}

        @server.handler("email:send")
        async def handler(ctx, payload):
            attempts[ctx.delivery_id] = attempts.get(ctx.delivery_id, 0) + 1
            if attempts[ctx.delivery_id] == 1:
                raise TransientError("smtp down")

        infos = [await broker.enqueue(envelope()) for _ in range(3)]

        while await server.run_once(timeout=0):
            pass

        for info in infos:
            stored = await broker.get_task(info.delivery_id)
            assert stored.state == TaskState.COMPLETED
            assert stored.retried == 1
