# storage/kv_store.py
# ============================================================================
# MCNATION STORE BACKEND — KEY-VALUE STORE
# ============================================================================
# Namespaced key-value store with per-key expiry. Everything it holds is a
# derived view of provider state plus idempotency markers, so losing it costs
# a resync, never money.
#
# Values are JSON documents. Writes replace the whole value; there are no
# partial-field updates.
# ============================================================================

import asyncio
import copy
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from pipeline.exceptions import CacheError

logger = structlog.get_logger().bind(component="kv_store")

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class IKeyValueStore(ABC):
    """Store interface. `ttl_seconds <= 0` stores without expiry."""

    backend_name = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    async def close(self) -> None:
        pass


class InMemoryKeyValueStore(IKeyValueStore):
    """
    In-process store. Expiry is evaluated lazily: an expired key reads as
    absent and is purged on that read.
    """

    backend_name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _live_entry(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            # Callers get their own copy, as they would from a network store
            return copy.deepcopy(entry[0])

    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        # Round-trip through JSON so non-serializable values fail here, not in production
        stored = json.loads(json.dumps(value))
        expires_at = self._clock() + ttl_seconds if ttl_seconds > 0 else None
        async with self._lock:
            self._entries[key] = (stored, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live_entry(key) is not None

    def __len__(self) -> int:
        return len(self._entries)


class RedisKeyValueStore(IKeyValueStore):
    """Redis-backed store. Expiry is delegated to Redis (`SET ... EX`)."""

    backend_name = "redis"

    def __init__(self, url: str, client: Optional[redis.Redis] = None):
        self._url = url
        self._redis = client or redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[Any]:
        try:
            data = await self._redis.get(key)
        except RedisError as e:
            logger.error("redis_get_error", key=key, error=str(e))
            raise CacheError("Cache read failed", {"key": key}) from e
        if data is None:
            return None
        return json.loads(data)

    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        payload = json.dumps(value)
        try:
            if ttl_seconds > 0:
                await self._redis.set(key, payload, ex=ttl_seconds)
            else:
                await self._redis.set(key, payload)
        except RedisError as e:
            logger.error("redis_set_error", key=key, error=str(e))
            raise CacheError("Cache write failed", {"key": key}) from e

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as e:
            logger.error("redis_delete_error", key=key, error=str(e))
            raise CacheError("Cache delete failed", {"key": key}) from e

    async def exists(self, key: str) -> bool:
        try:
            return await self._redis.exists(key) == 1
        except RedisError as e:
            logger.error("redis_exists_error", key=key, error=str(e))
            raise CacheError("Cache lookup failed", {"key": key}) from e

    async def close(self) -> None:
        await self._redis.aclose()


def create_store(redis_url: Optional[str] = None) -> IKeyValueStore:
    """Redis when a URL is configured, otherwise the in-process store."""
    if redis_url:
        logger.info("kv_store_selected", backend="redis", url=redis_url[:20] + "...")
        return RedisKeyValueStore(redis_url)
    logger.info("kv_store_selected", backend="memory")
    return InMemoryKeyValueStore()
