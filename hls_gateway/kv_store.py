"""Shared key-value stores with TTL expiry (signed URLs, signing keys, tokens, auth version)."""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import redis.asyncio as redis
from redis.exceptions import ResponseError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """
    String key-value store shared by every request.

    Values written with a TTL disappear once it elapses; an expired key is
    indistinguishable from one that was never written.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Store a value, optionally expiring after `ttl_seconds`."""

    @abstractmethod
    async def incr(self, key: str, initial: int = 0) -> int:
        """
        Atomically add one to an integer value and return the result.

        A missing key counts as `initial`.

        Raises:
            ValueError: If the stored value is not an integer
        """

    async def close(self) -> None:
        """Release connections held by the store."""


class MemoryKeyValueStore(KeyValueStore):
    """Thread-safe in-memory store for single-process deployments and tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._values: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = threading.RLock()
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                # Expired entries are dropped lazily
                self._values.pop(key, None)
                return None
            return value

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        with self._lock:
            self._values[key] = (value, expires_at)

    async def incr(self, key: str, initial: int = 0) -> int:
        with self._lock:
            current, expires_at = self._values.get(key, (None, None))
            if expires_at is not None and self._clock() >= expires_at:
                current, expires_at = None, None
            value = int(current) + 1 if current is not None else initial + 1
            self._values[key] = (str(value), expires_at)
            return value

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)


class RedisKeyValueStore(KeyValueStore):
    """Store backed by Redis, shared across workers and hosts."""

    def __init__(self, redis_url: str):
        self._client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        logger.info("Redis key-value store configured")

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None:
            await self._client.set(key, value, ex=ttl_seconds)
        else:
            await self._client.set(key, value)

    async def incr(self, key: str, initial: int = 0) -> int:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(key, initial, nx=True)
            pipe.incr(key)
            try:
                _, value = await pipe.execute()
            except ResponseError as e:
                raise ValueError(f"Value at {key} is not an integer") from e
        return int(value)

    async def close(self) -> None:
        await self._client.aclose()
