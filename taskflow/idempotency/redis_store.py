"""
Redis implementation of the idempotency store.

Keys live under a configurable prefix and carry a millisecond TTL; the lock is
taken with ``SET key value NX PX ttl`` so acquisition is a single atomic call.
"""

import logging
from datetime import timedelta

from redis.asyncio import Redis
from redis.exceptions import RedisError

from taskflow.config import get_settings
from taskflow.errors import IdempotencyStoreError

logger = logging.getLogger(__name__)


def _ttl_ms(ttl: timedelta) -> int:
    return max(1, int(ttl.total_seconds() * 1000))


class RedisIdempotencyStore:
    """Distributed idempotency store using Redis."""

    def __init__(self, redis_client: Redis, key_prefix: str | None = None) -> None:
        """
        Initialize the store with a Redis client.

        Args:
            redis_client: Async Redis client instance.
            key_prefix: Prefix for idempotency keys.
        """
        self._redis = redis_client
        self._key_prefix = get_settings().idempotency_key_prefix if key_prefix is None else key_prefix

    @classmethod
    def from_url(cls, url: str | None = None, key_prefix: str | None = None) -> "RedisIdempotencyStore":
        """Create a store with its own connection pool."""
        return cls(Redis.from_url(url or get_settings().redis_url), key_prefix=key_prefix)

    def _get_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def set_if_absent(self, key: str, value: str, ttl: timedelta) -> bool:
        try:
            stored = await self._redis.set(self._get_key(key), value, nx=True, px=_ttl_ms(ttl))
        except RedisError as e:
            raise IdempotencyStoreError("SET NX failed", {"idempotency_key": key}) from e
        return bool(stored)

    async def set(self, key: str, value: str, ttl: timedelta) -> None:
        try:
            await self._redis.set(self._get_key(key), value, px=_ttl_ms(ttl))
        except RedisError as e:
            raise IdempotencyStoreError("SET failed", {"idempotency_key": key}) from e

    async def get(self, key: str) -> str | None:
        try:
            value = await self._redis.get(self._get_key(key))
        except RedisError as e:
            raise IdempotencyStoreError("GET failed", {"idempotency_key": key}) from e
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._get_key(key))
        except RedisError as e:
            raise IdempotencyStoreError("DEL failed", {"idempotency_key": key}) from e

    async def ping(self) -> bool:
        """Health check used at worker startup."""
        try:
            return bool(await self._redis.ping())
        except RedisError:
            logger.warning("Idempotency store unreachable", exc_info=True)
            return False

    async def close(self) -> None:
        await self._redis.aclose()
