"""
Idempotency module.
Contains the store protocol, its implementations and the handler guard.
"""

from taskflow.idempotency.middleware import (
    IdempotencyConfig,
    IdempotencyGuard,
    KeyExtractor,
    idempotent,
)
from taskflow.idempotency.redis_store import RedisIdempotencyStore
from taskflow.idempotency.store import IdempotencyStore, InMemoryIdempotencyStore

__all__ = [
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "RedisIdempotencyStore",
    "IdempotencyConfig",
    "IdempotencyGuard",
    "KeyExtractor",
    "idempotent",
]
