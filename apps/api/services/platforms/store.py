"""Shared ephemeral state: TTL keys and atomic fixed-window counters.

Rate-limit buckets and PKCE verifiers live behind ``KeyValueStore`` so a single
instance can keep them in memory while multiple API/worker instances share them
through Redis. The fixed-window acquire is atomic in both implementations.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis

from config import settings


@dataclass(frozen=True)
class WindowState:
    allowed: bool
    count: int
    reset_at_ms: int


class KeyValueStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete ``key``."""
        raise NotImplementedError

    @abstractmethod
    async def acquire_window(self, key: str, limit: int, window_ms: int, now_ms: int) -> WindowState:
        """Atomic fixed-window check-and-increment.

        A missing or elapsed bucket restarts at count 1. A bucket already at
        ``limit`` is denied without being incremented.
        """
        raise NotImplementedError

    @abstractmethod
    async def peek_window(self, key: str) -> Optional[Tuple[int, int]]:
        """Return ``(count, reset_at_ms)`` without modifying the bucket."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryStore(KeyValueStore):
    """Process-local store. Correct for one instance only."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._windows: Dict[str, Tuple[int, int]] = {}
        self._lock = asyncio.Lock()

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._values.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live_value(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        async with self._lock:
            self._values[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._values.pop(key, None)
            self._windows.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        async with self._lock:
            value = self._live_value(key)
            self._values.pop(key, None)
            return value

    async def acquire_window(self, key: str, limit: int, window_ms: int, now_ms: int) -> WindowState:
        async with self._lock:
            bucket = self._windows.get(key)
            if bucket is None or now_ms > bucket[1]:
                reset_at = now_ms + window_ms
                self._windows[key] = (1, reset_at)
                return WindowState(allowed=True, count=1, reset_at_ms=reset_at)
            count, reset_at = bucket
            if count >= limit:
                return WindowState(allowed=False, count=count, reset_at_ms=reset_at)
            self._windows[key] = (count + 1, reset_at)
            return WindowState(allowed=True, count=count + 1, reset_at_ms=reset_at)

    async def peek_window(self, key: str) -> Optional[Tuple[int, int]]:
        async with self._lock:
            return self._windows.get(key)

    def clear(self) -> None:
        self._values.clear()
        self._windows.clear()


_ACQUIRE_WINDOW_LUA = """
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local raw = redis.call('HMGET', KEYS[1], 'count', 'reset_at')
local count = tonumber(raw[1])
local reset_at = tonumber(raw[2])
if (not count) or (not reset_at) or now > reset_at then
  reset_at = now + window
  redis.call('HSET', KEYS[1], 'count', 1, 'reset_at', reset_at)
  redis.call('PEXPIRE', KEYS[1], window + 1000)
  return {1, 1, reset_at}
end
if count >= limit then
  return {0, count, reset_at}
end
count = redis.call('HINCRBY', KEYS[1], 'count', 1)
return {1, count, reset_at}
"""


class RedisStore(KeyValueStore):
    """Store shared by every API and worker instance pointing at the same Redis."""

    def __init__(self, client: "redis.Redis", prefix: str = "social_sync:") -> None:
        self._client = client
        self._prefix = prefix
        self._acquire_script = client.register_script(_ACQUIRE_WINDOW_LUA)

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.from_url(url, decode_responses=True))

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        if ttl_seconds is None:
            await self._client.set(self._key(key), value)
        else:
            await self._client.set(self._key(key), value, px=max(int(ttl_seconds * 1000), 1))

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key), self._key(f"window:{key}"))

    async def pop(self, key: str) -> Optional[str]:
        return await self._client.getdel(self._key(key))

    async def acquire_window(self, key: str, limit: int, window_ms: int, now_ms: int) -> WindowState:
        allowed, count, reset_at = await self._acquire_script(
            keys=[self._key(f"window:{key}")],
            args=[int(limit), int(window_ms), int(now_ms)],
        )
        return WindowState(allowed=bool(int(allowed)), count=int(count), reset_at_ms=int(reset_at))

    async def peek_window(self, key: str) -> Optional[Tuple[int, int]]:
        count, reset_at = await self._client.hmget(self._key(f"window:{key}"), "count", "reset_at")
        if count is None or reset_at is None:
            return None
        return int(count), int(float(reset_at))

    async def close(self) -> None:
        await self._client.aclose()


_shared_store: Optional[KeyValueStore] = None


def get_shared_store() -> KeyValueStore:
    """Process singleton chosen by ``SHARED_STATE_BACKEND``."""
    global _shared_store
    if _shared_store is None:
        if settings.SHARED_STATE_BACKEND == "redis":
            _shared_store = RedisStore.from_url(settings.REDIS_URL)
        else:
            _shared_store = MemoryStore()
    return _shared_store


def set_shared_store(store: Optional[KeyValueStore]) -> None:
    global _shared_store
    _shared_store = store
