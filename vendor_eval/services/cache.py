# vendor_eval/services/cache.py
"""
Key/value cache with per-entry TTL.

Two interchangeable implementations:
- TTLCache: in-process dict, absolute expiry, injectable clock (tests use a fake one).
  Expired entries are dropped on read and swept on write.
- RedisCache: shared across processes, JSON values stored with SETEX through
  redis.asyncio. Degrades to cache misses when Redis is unavailable; a failed
  connect is not retried until the reconnect backoff has passed.

Both expose awaitable get / set / delete / clear, plus a synchronous stats().
Entries are independent and writes are plain overwrites, so no cross-entry
locking is done.
"""
from __future__ import annotations
import json
import time
import logging
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

DEFAULT_TTL_SECONDS = 300
PURGE_INTERVAL_SECONDS = 60
REDIS_SOCKET_TIMEOUT_SECONDS = 2.0
REDIS_RECONNECT_BACKOFF_SECONDS = 30.0


class TTLCache:
    """In-process cache; values are stored as-is."""

    def __init__(self, default_ttl: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic,
                 purge_interval: float = PURGE_INTERVAL_SECONDS):
        self.default_ttl = default_ttl
        self.purge_interval = purge_interval
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._stats = {"hits": 0, "misses": 0, "errors": 0}
        self._last_purge = clock()

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            self._stats["misses"] += 1
            return None
        self._stats["hits"] += 1
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        now = self._clock()
        if now - self._last_purge >= self.purge_interval:
            self.purge_expired()
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = (now + ttl, value)
        return True

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        self._last_purge = now
        expired = [k for k, (exp, _) in self._entries.items() if now >= exp]
        for k in expired:
            self._entries.pop(k, None)
        if expired:
            logger.debug("Purged %d expired cache entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        return _format_stats(self._stats, size=len(self._entries), default_ttl=self.default_ttl)


class RedisCache:
    """
    Redis-backed cache. Values must be JSON serializable.

    All Redis errors are logged and treated as misses / failed writes.
    """

    def __init__(self, redis_client: Optional[aioredis.Redis] = None, url: Optional[str] = None,
                 prefix: str = "vendor_eval:", default_ttl: int = DEFAULT_TTL_SECONDS,
                 reconnect_backoff: float = REDIS_RECONNECT_BACKOFF_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self._client = redis_client
        self._url = url
        self.prefix = prefix
        self.default_ttl = default_ttl
        self.reconnect_backoff = reconnect_backoff
        self._clock = clock
        self._retry_at: Optional[float] = None
        self._stats = {"hits": 0, "misses": 0, "errors": 0}

    def _connect(self) -> aioredis.Redis:
        return aioredis.Redis.from_url(
            self._url,
            decode_responses=True,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        )

    async def _redis(self) -> Optional[aioredis.Redis]:
        if self._client is not None:
            return self._client
        if not self._url:
            return None
        if self._retry_at is not None and self._clock() < self._retry_at:
            return None
        client = None
        try:
            client = self._connect()
            await client.ping()
        except (RedisError, OSError, ValueError) as e:
            self._retry_at = self._clock() + self.reconnect_backoff
            logger.warning("Redis not available for cache, retrying in %.0fs: %s", self.reconnect_backoff, e)
            if client is not None:
                await client.aclose()
            return None
        logger.debug("Connected to Redis for cache")
        self._retry_at = None
        self._client = client
        return client

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        r = await self._redis()
        if not r:
            self._stats["errors"] += 1
            return None
        try:
            raw = await r.get(self._key(key))
        except RedisError as e:
            logger.exception("Redis error reading %s: %s", key, e)
            self._stats["errors"] += 1
            return None
        if not raw:
            self._stats["misses"] += 1
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            self._stats["errors"] += 1
            return None
        self._stats["hits"] += 1
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        r = await self._redis()
        if not r:
            self._stats["errors"] += 1
            return False
        ttl = self.default_ttl if ttl is None else ttl
        try:
            await r.setex(self._key(key), int(ttl), json.dumps(value))
            return True
        except (RedisError, TypeError, ValueError) as e:
            logger.exception("Error caching %s: %s", key, e)
            self._stats["errors"] += 1
            return False

    async def delete(self, key: str) -> bool:
        r = await self._redis()
        if not r:
            return False
        try:
            return bool(await r.delete(self._key(key)))
        except RedisError as e:
            logger.exception("Error clearing cache for %s: %s", key, e)
            return False

    async def clear(self) -> None:
        r = await self._redis()
        if not r:
            return
        try:
            keys = [k async for k in r.scan_iter(match=f"{self.prefix}*")]
            if keys:
                deleted = await r.delete(*keys)
                logger.info("Cleared %d cached entries", deleted)
        except RedisError as e:
            logger.exception("Error clearing cache: %s", e)

    def stats(self) -> Dict[str, Any]:
        return _format_stats(self._stats, size=None, default_ttl=self.default_ttl)


def _format_stats(counters: Dict[str, int], size: Optional[int], default_ttl: int) -> Dict[str, Any]:
    total_requests = counters["hits"] + counters["misses"]
    hit_rate = (counters["hits"] / total_requests * 100) if total_requests > 0 else 0
    return {
        "hits": counters["hits"],
        "misses": counters["misses"],
        "errors": counters["errors"],
        "total_requests": total_requests,
        "hit_rate_percent": round(hit_rate, 2),
        "size": size,
        "default_ttl_seconds": default_ttl,
    }


def build_cache(redis_url: Optional[str] = None, default_ttl: int = DEFAULT_TTL_SECONDS):
    """RedisCache when a URL is configured, otherwise an in-process TTLCache."""
    if redis_url:
        return RedisCache(url=redis_url, default_ttl=default_ttl)
    return TTLCache(default_ttl=default_ttl)
