"""
Unit tests for the Redis idempotency store.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from taskflow.errors import IdempotencyStoreError
from taskflow.idempotency import IdempotencyStore, RedisIdempotencyStore


@pytest.fixture
def redis_client() -> MagicMock:
    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.delete = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def redis_store(redis_client) -> RedisIdempotencyStore:
    return RedisIdempotencyStore(redis_client, key_prefix="test:")


class TestRedisIdempotencyStore:
    """Tests for RedisIdempotencyStore."""

    def test_satisfies_protocol(self, redis_store):
        assert isinstance(redis_store, IdempotencyStore)

    @pytest.mark.asyncio
    async def test_set_if_absent_uses_set_nx_px(self, redis_store, redis_client):
        """Test the lock is one atomic SET NX PX call under the prefix."""
        acquired = await redis_store.set_if_absent("order:42", "in-progress", timedelta(minutes=15))

        assert acquired is True
        redis_client.set.assert_awaited_once_with(
            "test:order:42", "in-progress", nx=True, px=900_000
        )

    @pytest.mark.asyncio
    async def test_set_if_absent_existing_key(self, redis_store, redis_client):
        redis_client.set.return_value = None

        assert await redis_store.set_if_absent("order:42", "in-progress", timedelta(seconds=1)) is False

    @pytest.mark.asyncio
    async def test_set_overwrites_with_ttl(self, redis_store, redis_client):
        await redis_store.set("order:42", "completed", timedelta(hours=24))

        redis_client.set.assert_awaited_once_with("test:order:42", "completed", px=86_400_000)

    @pytest.mark.asyncio
    async def test_sub_millisecond_ttl_rounds_up(self, redis_store, redis_client):
        await redis_store.set("order:42", "completed", timedelta(microseconds=10))

        assert redis_client.set.await_args.kwargs["px"] == 1

    @pytest.mark.asyncio
    async def test_get_decodes_bytes(self, redis_store, redis_client):
        redis_client.get.return_value = b"completed"

        assert await redis_store.get("order:42") == "completed"
        redis_client.get.assert_awaited_once_with("test:order:42")

    @pytest.mark.asyncio
    async def test_get_missing(self, redis_store):
        assert await redis_store.get("order:42") is None

    @pytest.mark.asyncio
    async def test_delete(self, redis_store, redis_client):
        await redis_store.delete("order:42")

        redis_client.delete.assert_awaited_once_with("test:order:42")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["set_if_absent", "set", "get", "delete"])
    async def test_redis_errors_are_translated(self, redis_store, redis_client, method):
        """Test connection failures surface as IdempotencyStoreError."""
        error = RedisConnectionError("connection refused")
        redis_client.set.side_effect = error
        redis_client.get.side_effect = error
        redis_client.delete.side_effect = error

        args = {
            "set_if_absent": ("order:42", "in-progress", timedelta(seconds=1)),
            "set": ("order:42", "completed", timedelta(seconds=1)),
            "get": ("order:42",),
            "delete": ("order:42",),
        }[method]

        with pytest.raises(IdempotencyStoreError) as exc_info:
            await getattr(redis_store, method)(*args)

        assert exc_info.value.details == {"idempotency_key": "order:42"}

    @pytest.mark.asyncio
    async def test_ping(self, redis_store, redis_client):
        assert await redis_store.ping() is True

        redis_client.ping.side_effect = RedisConnectionError("down")
        assert await redis_store.ping() is False

    @pytest.mark.asyncio
    async def test_close(self, redis_store, redis_client):
        await redis_store.close()

        redis_client.aclose.assert_awaited_once()

    def test_default_prefix_from_settings(self, redis_client):
        store = RedisIdempotencyStore(redis_client)

        assert store._get_key("order:42") == "idempotency:order:42"
