"""
Broker module.
Contains the broker capability protocols and their implementations.
"""

from taskflow.broker.base import Broker, TaskEnqueuer, retry_delay_seconds
from taskflow.broker.memory import InMemoryBroker
from taskflow.broker.postgres import PostgresBroker

__all__ = [
    "Broker",
    "TaskEnqueuer",
    "retry_delay_seconds",
    "InMemoryBroker",
    "PostgresBroker",
]
