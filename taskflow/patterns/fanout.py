"""
Fanout dispatch.

Publishing an event enqueues one independent task per registered handler,
with task type ``fanout:<event_type>:<handler_id>``. Each handler retries and
fails on its own; a failing handler never affects the others.
"""

import asyncio
import logging
import re
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from taskflow.broker.base import TaskEnqueuer
from taskflow.constants import DEFAULT_MAX_RETRY, FANOUT_TASK_PREFIX, TASK_TYPE_PATTERN, Queue
from taskflow.errors import ConfigurationError, ValidationError
from taskflow.types.events import FanoutEvent, FanoutResult
from taskflow.types.task import TaskContext, TaskEnvelope, decode_payload
from taskflow.worker.middleware import Middleware
from taskflow.worker.server import WorkerServer

logger = logging.getLogger(__name__)

FanoutHandlerFunc = Callable[[TaskContext, FanoutEvent], Awaitable[None]]


@dataclass(frozen=True)
class FanoutHandler:
    """One subscriber of an event type."""

    handler_id: str
    handler: FanoutHandlerFunc
    queue: Queue = Queue.DEFAULT
    max_retry: int = DEFAULT_MAX_RETRY


def fanout_task_type(event_type: str, handler_id: str) -> str:
    return f"{FANOUT_TASK_PREFIX}{event_type}:{handler_id}"


def parse_fanout_task_type(task_type: str) -> tuple[str, str]:
    """
    Split a fanout task type into (event_type, handler_id).

    Event types may themselves contain ``:``; the handler id is the last segment.

    Raises:
        ValidationError: If the task type is not a fanout task type.
    """
    if not task_type.startswith(FANOUT_TASK_PREFIX):
        raise ValidationError("not a fanout task type", {"task_type": task_type})

    event_type, sep, handler_id = task_type[len(FANOUT_TASK_PREFIX):].rpartition(":")
    if not sep or not event_type or not handler_id:
        raise ValidationError("malformed fanout task type", {"task_type": task_type})
    return event_type, handler_id


class FanoutRegistry:
    """
    Event type to handler list mapping.

    Copy-on-write: writers build a new mapping under a lock and swap it in,
    so readers always see a consistent snapshot without locking.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, tuple[FanoutHandler, ...]] = {}
        self._lock = threading.Lock()

    def register(
        self,
        event_type: str,
        handler_id: str,
        handler: FanoutHandlerFunc,
        queue: Queue = Queue.DEFAULT,
        max_retry: int = DEFAULT_MAX_RETRY,
    ) -> FanoutHandler:
        """
        Subscribe a handler to an event type.

        Raises:
            ConfigurationError: Empty or malformed ids, a non-callable handler,
                or a handler id already registered for the event type.
        """
        if not event_type:
            raise ConfigurationError("event type must not be empty")
        if not handler_id:
            raise ConfigurationError("handler id must not be empty", {"event_type": event_type})
        if ":" in handler_id:
            raise ConfigurationError(
                "handler id must not contain ':'",
                {"event_type": event_type, "handler_id": handler_id},
            )
        if handler is None or not callable(handler):
            raise ConfigurationError(
                "handler must be callable",
                {"event_type": event_type, "handler_id": handler_id},
            )
        if not re.fullmatch(TASK_TYPE_PATTERN, fanout_task_type(event_type, handler_id)):
            raise ConfigurationError(
                "event type and handler id must be usable in a task type",
                {"event_type": event_type, "handler_id": handler_id},
            )

        entry = FanoutHandler(handler_id=handler_id, handler=handler, queue=Queue(queue), max_retry=max_retry)

        with self._lock:
            current = self._handlers.get(event_type, ())
            if any(h.handler_id == handler_id for h in current):
                raise ConfigurationError(
                    "handler already registered for event type",
                    {"event_type": event_type, "handler_id": handler_id},
                )
            updated = dict(self._handlers)
            updated[event_type] = (*current, entry)
            self._handlers = updated

        logger.info(
            "Registered fanout handler",
            extra={"event_type": event_type, "handler_id": handler_id, "queue": entry.queue},
        )
        return entry

    def unregister(self, event_type: str, handler_id: str) -> bool:
        """Remove a subscription. Returns False if it did not exist."""
        with self._lock:
            current = self._handlers.get(event_type, ())
            remaining = tuple(h for h in current if h.handler_id != handler_id)
            if len(remaining) == len(current):
                return False
            updated = dict(self._handlers)
            if remaining:
                updated[event_type] = remaining
            else:
                del updated[event_type]
            self._handlers = updated
        return True

    def handlers(self, event_type: str) -> tuple[FanoutHandler, ...]:
        """Handlers for an event type, in registration order."""
        return self._handlers.get(event_type, ())

    def get(self, event_type: str, handler_id: str) -> FanoutHandler | None:
        for entry in self.handlers(event_type):
            if entry.handler_id == handler_id:
                return entry
        return None

    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    def task_types(self) -> list[str]:
        """Every fanout task type a worker must handle."""
        snapshot = self._handlers
        return [
            fanout_task_type(event_type, entry.handler_id)
            for event_type in sorted(snapshot)
            for entry in snapshot[event_type]
        ]


class Fanout:
    """Publishes events to every registered handler."""

    def __init__(self, enqueuer: TaskEnqueuer, registry: FanoutRegistry):
        self._enqueuer = enqueuer
        self._registry = registry

    async def publish(self, event: FanoutEvent) -> list[FanoutResult]:
        """
        Enqueue one task per handler of ``event.type``.

        Enqueues are independent: a failure is reported in that handler's
        result and does not stop the others.

        Returns:
            One result per handler, in registration order. Empty if nobody
            subscribes to the event type.
        """
        handlers = self._registry.handlers(event.type)
        if not handlers:
            logger.debug("No fanout handlers for event", extra={"event_type": event.type})
            return []

        payload = event.stamped().model_dump_json().encode()
        results = await asyncio.gather(
            *(self._enqueue_one(event.type, entry, payload) for entry in handlers)
        )

        failed = sum(1 for result in results if not result.ok)
        logger.info(
            "Fanout event published",
            extra={"event_type": event.type, "handlers": len(results), "failed": failed},
        )
        return list(results)

    async def _enqueue_one(self, event_type: str, entry: FanoutHandler, payload: bytes) -> FanoutResult:
        task_type = fanout_task_type(event_type, entry.handler_id)
        envelope = TaskEnvelope(
            type=task_type,
            payload=payload,
            queue=entry.queue,
            max_retry=entry.max_retry,
        )
        try:
            info = await self._enqueuer.enqueue(envelope)
        except Exception as e:
            logger.error(
                "Failed to enqueue fanout task",
                extra={"event_type": event_type, "handler_id": entry.handler_id, "error": str(e)},
            )
            return FanoutResult(handler_id=entry.handler_id, task_type=task_type, error=e)
        return FanoutResult(handler_id=entry.handler_id, task_type=task_type, info=info)


class FanoutDispatcher:
    """Worker-side handler that routes fanout tasks to their registered handler."""

    def __init__(self, registry: FanoutRegistry):
        self._registry = registry

    async def handle(self, ctx: TaskContext, payload: bytes) -> None:
        """
        Decode the event and call the handler named by the task type.

        Raises:
            ValidationError: Unparseable task type, undecodable event or an
                unregistered handler. Never retried.
        """
        event_type, handler_id = parse_fanout_task_type(ctx.task_type)

        entry = self._registry.get(event_type, handler_id)
        if entry is None:
            raise ValidationError(
                "no fanout handler registered",
                {"event_type": event_type, "handler_id": handler_id},
            )

        event = decode_payload(FanoutEvent, payload)
        await entry.handler(ctx, event)

    def bind(self, server: WorkerServer, *middlewares: Middleware) -> list[str]:
        """
        Register the dispatcher for every fanout task type known to the registry.

        Returns:
            The registered task types.
        """
        task_types = self._registry.task_types()
        for task_type in task_types:
            server.handle(task_type, self.handle, *middlewares)
        return task_types
