"""
Asynchronous Task Execution Core

A priority-queue task processor with a composable middleware pipeline,
idempotency guards, and fire-and-forget, scheduled and fanout dispatch patterns.
"""

__version__ = "1.0.0"
