"""
Log rendering for the worker, scheduler and reaper processes.

Modules keep logging through ``logging.getLogger(__name__)`` with ``extra=``;
structlog only sits at the formatter end, so a record carries its extras,
the bound task context and the active trace ids.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace

from taskflow.config import get_settings

# Loggers that are too chatty at INFO
_QUIET_LOGGERS = ("sqlalchemy.engine", "asyncio", "redis")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Stamp trace_id/span_id of the recording span, if any, onto the event."""
    span = trace.get_current_span()
    if span.is_recording():
        span_context = span.get_span_context()
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def _renderer(log_format: str) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging() -> None:
    """Route every stdlib record through structlog; called once per process."""
    settings = get_settings()

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                _renderer(settings.log_format),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [stream]
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**values: Any) -> None:
    """Attach values to every later record of the current asyncio task."""
    structlog.contextvars.bind_contextvars(**values)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def task_log_context(task_type: str, delivery_id: str, queue: str) -> Iterator[None]:
    """
    Tag every log line emitted while a task runs with its identity.

    Context variables are per asyncio task, so concurrent worker slots
    never see each other's values.
    """
    with structlog.contextvars.bound_contextvars(
        task_type=task_type,
        delivery_id=delivery_id,
        queue=queue,
    ):
        yield
