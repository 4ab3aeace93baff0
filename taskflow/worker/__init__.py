"""
Worker module.
Contains the worker server, its middleware and the built-in task handlers.
"""

from taskflow.worker.middleware import (
    Handler,
    Middleware,
    compose,
    default_middlewares,
    logging_middleware,
    metrics_middleware,
    recovery_middleware,
    tracing_middleware,
)
from taskflow.worker.server import WorkerServer

__all__ = [
    "WorkerServer",
    "Handler",
    "Middleware",
    "compose",
    "default_middlewares",
    "recovery_middleware",
    "tracing_middleware",
    "metrics_middleware",
    "logging_middleware",
]
