"""
Cron-scheduled dispatch.

The scheduler only enqueues: each due entry produces one task per firing,
which workers then process like any other. Cron expressions are evaluated in
UTC. Missed firings (process down, clock jumps) are not backfilled.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import uuid4

from croniter import croniter

from taskflow.broker.base import TaskEnqueuer
from taskflow.config import get_settings
from taskflow.errors import ConfigurationError
from taskflow.types.task import TaskEnvelope, TaskInfo

logger = logging.getLogger(__name__)

CRON_FIELDS = 5


@dataclass
class ScheduleEntry:
    """A task template enqueued on every firing of a cron expression."""

    cronspec: str
    envelope: TaskEnvelope
    description: str = ""
    entry_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass
class ScheduleFiring:
    """Result of one firing of an entry."""

    entry_id: str
    scheduled_for: datetime
    info: TaskInfo | None = None
    error: str | None = None


def validate_cronspec(cronspec: str) -> None:
    """
    Check a standard five-field cron expression.

    Raises:
        ConfigurationError: If the expression is malformed.
    """
    if len(cronspec.split()) != CRON_FIELDS:
        raise ConfigurationError(
            f"cronspec must have {CRON_FIELDS} fields",
            {"cronspec": cronspec},
        )
    if not croniter.is_valid(cronspec):
        raise ConfigurationError("invalid cronspec", {"cronspec": cronspec})


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def next_fire_time(cronspec: str, after: datetime) -> datetime:
    """First firing strictly after ``after``, in UTC. Naive datetimes are taken as UTC."""
    return croniter(cronspec, _as_utc(after)).get_next(datetime)


@dataclass
class _EntryState:
    entry: ScheduleEntry
    next_run: datetime


class Scheduler:
    """
    Enqueues registered entries when they are due.

    Overlapping executions are allowed: a firing is enqueued even if the
    previous one is still being processed.
    """

    def __init__(
        self,
        enqueuer: TaskEnqueuer,
        clock: Callable[[], datetime] | None = None,
        max_sleep: float | None = None,
    ):
        """
        Initialize the scheduler.

        Args:
            enqueuer: Where due tasks are submitted.
            clock: Returns the current time. Defaults to the UTC wall clock.
            max_sleep: Upper bound on one sleep of run(), in seconds.
        """
        self._enqueuer = enqueuer
        self._clock = clock or (lambda: datetime.now(UTC))
        self._max_sleep = max_sleep or get_settings().scheduler_max_sleep_seconds
        self._entries: dict[str, _EntryState] = {}
        self._stop = asyncio.Event()

    def _now(self, now: datetime | None = None) -> datetime:
        return _as_utc(now or self._clock())

    def register(self, entry: ScheduleEntry, now: datetime | None = None) -> str:
        """
        Add an entry.

        Returns:
            The entry id.

        Raises:
            ConfigurationError: Invalid cronspec or duplicate entry id.
        """
        validate_cronspec(entry.cronspec)
        if entry.entry_id in self._entries:
            raise ConfigurationError("schedule entry already registered", {"entry_id": entry.entry_id})

        next_run = next_fire_time(entry.cronspec, self._now(now))
        self._entries[entry.entry_id] = _EntryState(entry=entry, next_run=next_run)

        logger.info(
            "Registered scheduled task",
            extra={
                "entry_id": entry.entry_id,
                "cronspec": entry.cronspec,
                "task_type": entry.envelope.type,
                "description": entry.description,
                "next_run": next_run.isoformat(),
            },
        )
        return entry.entry_id

    def register_all(self, entries: Iterable[ScheduleEntry], now: datetime | None = None) -> list[str]:
        return [self.register(entry, now) for entry in entries]

    def unregister(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None

    @property
    def entries(self) -> list[ScheduleEntry]:
        return [state.entry for state in self._entries.values()]

    def next_run(self, entry_id: str) -> datetime | None:
        state = self._entries.get(entry_id)
        return state.next_run if state else None

    async def tick(self, now: datetime | None = None) -> list[ScheduleFiring]:
        """
        Enqueue every entry that is due at ``now``.

        Each due entry fires once, however many firings were missed, and its
        next run is computed from ``now``.
        """
        now = self._now(now)
        firings: list[ScheduleFiring] = []

        for state in list(self._entries.values()):
            if state.next_run > now:
                continue

            scheduled_for = state.next_run
            state.next_run = next_fire_time(state.entry.cronspec, now)
            entry = state.entry

            try:
                info = await self._enqueuer.enqueue(entry.envelope)
            except Exception as e:
                logger.error(
                    "Failed to enqueue scheduled task",
                    extra={
                        "entry_id": entry.entry_id,
                        "task_type": entry.envelope.type,
                        "scheduled_for": scheduled_for.isoformat(),
                        "error": str(e),
                    },
                )
                firings.append(ScheduleFiring(entry.entry_id, scheduled_for, error=str(e)))
                continue

            logger.info(
                "Scheduled task enqueued",
                extra={
                    "entry_id": entry.entry_id,
                    "task_type": entry.envelope.type,
                    "delivery_id": info.delivery_id,
                    "scheduled_for": scheduled_for.isoformat(),
                },
            )
            firings.append(ScheduleFiring(entry.entry_id, scheduled_for, info=info))

        return firings

    def seconds_until_next(self, now: datetime | None = None) -> float:
        """Time until the earliest entry is due, capped at max_sleep."""
        if not self._entries:
            return self._max_sleep
        now = self._now(now)
        earliest = min(state.next_run for state in self._entries.values())
        return min(self._max_sleep, max(0.0, (earliest - now).total_seconds()))

    async def run(self) -> None:
        """Tick until stop() is called."""
        self._stop.clear()
        logger.info("Scheduler started", extra={"entries": len(self._entries)})

        while not self._stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.seconds_until_next())
            except TimeoutError:
                pass

        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stop.set()
