"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from taskflow.observability.logging import (
    bind_context,
    clear_context,
    setup_logging,
    task_log_context,
)
from taskflow.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
    start_metrics_server,
)
from taskflow.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_context",
    "clear_context",
    "task_log_context",
    "setup_metrics",
    "get_metrics",
    "start_metrics_server",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
