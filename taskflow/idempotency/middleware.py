"""
Idempotency guard for task handlers.

Deliveries are at-least-once, so a handler with external side effects can run
more than once for the same logical operation. The guard takes an in-progress
lock under a caller-supplied key before running the handler, records completion
afterwards, and skips deliveries whose key is already completed.

Lock states stored under the key:
- in-progress: a handler is (or was, until the lock TTL) running
- completed: the side effect happened; remembered for completed_ttl
"""

import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

from taskflow.config import Settings, get_settings
from taskflow.constants import IDEMPOTENCY_LOCK_MARGIN_SECONDS, FailMode, IdempotencyState
from taskflow.errors import IdempotencyConflictError, IdempotencyStoreError
from taskflow.idempotency.store import IdempotencyStore
from taskflow.observability.metrics import MetricsCollector, get_metrics
from taskflow.types.task import TaskContext
from taskflow.worker.middleware import Handler, Middleware

logger = logging.getLogger(__name__)

KeyExtractor = Callable[[TaskContext, bytes], str | None]

# Guard outcomes (metric label)
OUTCOME_ACQUIRED = "acquired"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_CONFLICT = "conflict"
OUTCOME_UNGUARDED = "unguarded"
OUTCOME_STORE_ERROR = "store_error"
OUTCOME_NO_KEY = "no_key"

# A key that expires between SET NX and GET is claimed again this many times
_CLAIM_ATTEMPTS = 2


@dataclass(frozen=True)
class IdempotencyConfig:
    """
    Guard behaviour.

    lock_ttl is a floor: a delivery whose deadline is longer holds its lock
    for the deadline plus a margin, so the lock never expires mid-run.
    """

    fail_mode: FailMode = FailMode.FAIL_OPEN
    lock_ttl: timedelta = timedelta(minutes=15)
    completed_ttl: timedelta = timedelta(hours=24)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "IdempotencyConfig":
        settings = settings or get_settings()
        return cls(
            fail_mode=settings.idempotency_fail_mode,
            lock_ttl=timedelta(seconds=settings.idempotency_lock_ttl_seconds),
            completed_ttl=timedelta(seconds=settings.idempotency_completed_ttl_seconds),
        )


class IdempotencyGuard:
    """Runs a callable at most once per key while the key is remembered."""

    def __init__(
        self,
        store: IdempotencyStore,
        config: IdempotencyConfig | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._config = config or IdempotencyConfig.from_settings()
        self._metrics = metrics or get_metrics()

    @property
    def config(self) -> IdempotencyConfig:
        return self._config

    async def run(
        self,
        key: str | None,
        call: Callable[[], Awaitable[None]],
        timeout_seconds: float | None = None,
    ) -> str:
        """
        Run ``call`` under the guard for ``key``.

        Args:
            key: Idempotency key; empty disables the guard.
            call: The guarded work.
            timeout_seconds: Execution deadline of ``call``. The in-progress
                lock is held at least this long plus a margin.

        Returns:
            The guard outcome.

        Raises:
            IdempotencyConflictError: Key in progress elsewhere (fail-closed).
            IdempotencyStoreError: Store unreachable (fail-closed).
        """
        if not key:
            self._metrics.record_idempotency_check(OUTCOME_NO_KEY)
            await call()
            return OUTCOME_NO_KEY

        try:
            existing = await self._claim(key, self.lock_ttl_for(timeout_seconds))
        except IdempotencyStoreError:
            self._metrics.record_idempotency_check(OUTCOME_STORE_ERROR)
            if self._config.fail_mode == FailMode.FAIL_CLOSED:
                logger.error("Idempotency store unavailable", extra={"idempotency_key": key})
                raise
            logger.warning(
                "Idempotency store unavailable, running unguarded",
                extra={"idempotency_key": key},
                exc_info=True,
            )
            await call()
            return OUTCOME_STORE_ERROR

        if existing == IdempotencyState.COMPLETED:
            self._metrics.record_idempotency_check(OUTCOME_DUPLICATE)
            logger.info("Duplicate delivery skipped", extra={"idempotency_key": key})
            return OUTCOME_DUPLICATE

        if existing is not None:
            if self._config.fail_mode == FailMode.FAIL_CLOSED:
                self._metrics.record_idempotency_check(OUTCOME_CONFLICT)
                logger.warning("Idempotency key in progress", extra={"idempotency_key": key})
                raise IdempotencyConflictError(key)
            # The lock belongs to another execution; never touch it
            self._metrics.record_idempotency_check(OUTCOME_UNGUARDED)
            logger.warning(
                "Idempotency key in progress, running unguarded",
                extra={"idempotency_key": key},
            )
            await call()
            return OUTCOME_UNGUARDED

        self._metrics.record_idempotency_check(OUTCOME_ACQUIRED)
        try:
            await call()
        except BaseException:
            await self._release(key)
            raise

        await self._mark_completed(key)
        return OUTCOME_ACQUIRED

    def lock_ttl_for(self, timeout_seconds: float | None) -> timedelta:
        """Lock lifetime for a delivery with the given deadline."""
        if timeout_seconds is None:
            return self._config.lock_ttl
        return max(
            self._config.lock_ttl,
            timedelta(seconds=timeout_seconds + IDEMPOTENCY_LOCK_MARGIN_SECONDS),
        )

    async def _claim(self, key: str, lock_ttl: timedelta) -> str | None:
        """Take the in-progress lock. Returns None when acquired, else the stored state."""
        for _ in range(_CLAIM_ATTEMPTS):
            if await self._store.set_if_absent(key, IdempotencyState.IN_PROGRESS, lock_ttl):
                return None
            existing = await self._store.get(key)
            if existing is not None:
                return existing
        return IdempotencyState.IN_PROGRESS

    async def _release(self, key: str) -> None:
        try:
            await self._store.delete(key)
        except IdempotencyStoreError:
            logger.warning(
                "Failed to release idempotency lock, it will expire by TTL",
                extra={"idempotency_key": key},
                exc_info=True,
            )

    async def _mark_completed(self, key: str) -> None:
        try:
            await self._store.set(key, IdempotencyState.COMPLETED, self._config.completed_ttl)
        except IdempotencyStoreError:
            # The side effect already happened; a redelivery after the lock
            # expires may repeat it
            logger.error(
                "Failed to record idempotency completion",
                extra={"idempotency_key": key},
                exc_info=True,
            )


def idempotent(
    store: IdempotencyStore,
    key_extractor: KeyExtractor,
    config: IdempotencyConfig | None = None,
    metrics: MetricsCollector | None = None,
) -> Middleware:
    """
    Build a middleware that guards a handler with an idempotency key.

    Args:
        store: Shared idempotency store.
        key_extractor: Derives the key from a delivery. Must be stable across
            retries; returning None or "" disables protection for that delivery.
        config: Fail mode and TTLs. Defaults to the application settings.
        metrics: Collector for guard outcomes.
    """
    guard = IdempotencyGuard(store, config, metrics)

    def middleware(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(ctx: TaskContext, payload: bytes) -> None:
            key = key_extractor(ctx, payload)
            await guard.run(key, lambda: handler(ctx, payload), ctx.timeout_seconds)

        return wrapper

    return middleware
