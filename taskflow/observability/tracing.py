"""
Span export for task processes.

Library code asks :func:`get_tracer` for a tracer and never configures
exporters itself; only the worker, scheduler and reaper entry points call
:func:`setup_tracing`.
"""

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Tracer

from taskflow import __version__
from taskflow.config import get_settings

logger = logging.getLogger(__name__)

# Set by setup_tracing(); tests swap it for an in-memory tracer
_tracer: Tracer | None = None


def setup_tracing(console: bool = False) -> Tracer:
    """
    Install a global provider exporting over OTLP/gRPC.

    Args:
        console: Also print finished spans, for local debugging.
    """
    global _tracer

    settings = get_settings()
    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": settings.otel_service_name, "service.version": __version__}
        )
    )

    try:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
    except Exception:
        logger.warning("OTLP exporter unavailable, spans will not be exported", exc_info=True)
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))

    if console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(settings.otel_service_name)
    return _tracer


def instrument_sqlalchemy(engine: Any) -> None:
    """Emit a span per statement on the broker's engine."""
    SQLAlchemyInstrumentor().instrument(engine=engine)


def get_tracer() -> Tracer:
    """The configured tracer, or one from the global (no-op by default) provider."""
    if _tracer is None:
        return trace.get_tracer(get_settings().otel_service_name)
    return _tracer
