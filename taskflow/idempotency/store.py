"""
Idempotency store interface and an in-process implementation.

A store is a key/value map with per-key expiry and an atomic conditional
set. Callers never need a read-then-write sequence to take a lock.
"""

import asyncio
import time
from datetime import timedelta
from typing import Protocol, runtime_checkable


@runtime_checkable
class IdempotencyStore(Protocol):
    """TTL'd conditional-set primitive shared by all workers."""

    async def set_if_absent(self, key: str, value: str, ttl: timedelta) -> bool:
        """Atomically store ``value`` unless the key exists. True if it was stored."""
        ...

    async def set(self, key: str, value: str, ttl: timedelta) -> None:
        """Unconditionally store ``value`` with a fresh TTL."""
        ...

    async def get(self, key: str) -> str | None:
        ...

    async def delete(self, key: str) -> None:
        ...


class InMemoryIdempotencyStore:
    """
    Store for a single process: local runs and tests.

    Expired keys are dropped lazily on access.
    """

    # Sweep expired entries once the map grows past this size
    _SWEEP_THRESHOLD = 20_000

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str, now: float) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            del self._entries[key]
            return None
        return value

    async def set_if_absent(self, key: str, value: str, ttl: timedelta) -> bool:
        async with self._lock:
            now = time.monotonic()
            if self._live(key, now) is not None:
                return False
            self._entries[key] = (value, now + ttl.total_seconds())
            if len(self._entries) > self._SWEEP_THRESHOLD:
                self._sweep(now)
            return True

    async def set(self, key: str, value: str, ttl: timedelta) -> None:
        async with self._lock:
            self._entries[key] = (value, time.monotonic() + ttl.total_seconds())

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._live(key, time.monotonic())

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    def _sweep(self, now: float) -> None:
        for key, (_, expires_at) in list(self._entries.items()):
            if expires_at <= now:
                self._entries.pop(key, None)
