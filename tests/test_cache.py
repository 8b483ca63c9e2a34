import asyncio
import json
from unittest.mock import AsyncMock, Mock

from redis.exceptions import ConnectionError as RedisConnectionError, RedisError

import vendor_eval.services.cache as cache_module
from vendor_eval.services.cache import RedisCache, TTLCache, build_cache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _redis_client():
    client = Mock()
    client.get = AsyncMock(return_value=None)
    client.setex = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    return client


class TestTTLCache:
    """In-process cache with per-entry expiry"""

    def test_entry_expires_after_ttl(self):
        """An entry set with ttl=60 is present at +59s and absent at +61s"""
        clock = FakeClock()
        cache = TTLCache(clock=clock)
        asyncio.run(cache.set("mcp:1:abc", {"payload": 1}, ttl=60))

        clock.advance(59)
        assert asyncio.run(cache.get("mcp:1:abc")) == {"payload": 1}

        clock.advance(2)
        assert asyncio.run(cache.get("mcp:1:abc")) is None
        assert len(cache) == 0

    def test_default_ttl_applies(self):
        clock = FakeClock()
        cache = TTLCache(default_ttl=300, clock=clock)
        asyncio.run(cache.set("k", "v"))
        clock.advance(299)
        assert asyncio.run(cache.get("k")) == "v"
        clock.advance(1)
        assert asyncio.run(cache.get("k")) is None

    def test_overwrite_resets_expiry(self):
        clock = FakeClock()
        cache = TTLCache(clock=clock)

        async def scenario():
            await cache.set("k", "old", ttl=10)
            clock.advance(8)
            await cache.set("k", "new", ttl=10)
            clock.advance(8)
            return await cache.get("k")

        assert asyncio.run(scenario()) == "new"

    def test_delete_clear_and_purge(self):
        clock = FakeClock()
        cache = TTLCache(clock=clock)

        async def scenario():
            await cache.set("a", 1, ttl=5)
            await cache.set("b", 2, ttl=50)
            await cache.set("c", 3, ttl=50)

            assert await cache.delete("c") is True
            assert await cache.delete("c") is False

            clock.advance(10)
            assert cache.purge_expired() == 1
            assert len(cache) == 1

            await cache.clear()
            assert await cache.get("b") is None

        asyncio.run(scenario())

    def test_writes_sweep_entries_that_are_never_read(self):
        """Expired keys nobody reads again are dropped once the purge interval has passed"""
        clock = FakeClock()
        cache = TTLCache(clock=clock, purge_interval=60)

        async def scenario():
            for day in range(1000):
                await cache.set(f"mcp:c1:vendor-{day}", {"day": day}, ttl=30)
                clock.advance(86400)

        asyncio.run(scenario())

        assert len(cache) <= 1

    def test_sweep_waits_for_purge_interval(self):
        clock = FakeClock()
        cache = TTLCache(clock=clock, purge_interval=60)

        async def scenario():
            await cache.set("a", 1, ttl=5)
            clock.advance(10)
            await cache.set("b", 2, ttl=5)
            assert len(cache) == 2
            clock.advance(50)
            await cache.set("c", 3, ttl=5)

        asyncio.run(scenario())

        assert len(cache) == 1

    def test_stats_count_hits_and_misses(self):
        cache = TTLCache(clock=FakeClock())

        async def scenario():
            await cache.set("k", 1)
            await cache.get("k")
            await cache.get("missing")

        asyncio.run(scenario())

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate_percent"] == 50.0
        assert stats["size"] == 1


class TestRedisCache:
    """Redis-backed cache with an injected async client"""

    def test_set_stores_json_with_ttl(self):
        client = _redis_client()
        cache = RedisCache(redis_client=client, prefix="t:")

        assert asyncio.run(cache.set("k", {"a": 1}, ttl=60)) is True
        client.setex.assert_awaited_once_with("t:k", 60, json.dumps({"a": 1}))

    def test_get_decodes_json(self):
        client = _redis_client()
        client.get.return_value = '{"a": 1}'
        cache = RedisCache(redis_client=client, prefix="t:")

        assert asyncio.run(cache.get("k")) == {"a": 1}
        client.get.assert_awaited_once_with("t:k")
        assert cache.stats()["hits"] == 1

    def test_missing_key_is_a_miss(self):
        client = _redis_client()
        cache = RedisCache(redis_client=client)

        assert asyncio.run(cache.get("k")) is None
        assert cache.stats()["misses"] == 1

    def test_redis_errors_degrade_to_miss(self):
        client = _redis_client()
        client.get.side_effect = RedisError("down")
        client.setex.side_effect = RedisError("down")
        cache = RedisCache(redis_client=client)

        assert asyncio.run(cache.get("k")) is None
        assert asyncio.run(cache.set("k", 1)) is False
        assert cache.stats()["errors"] == 2

    def test_no_url_means_no_cache(self):
        cache = RedisCache()
        assert asyncio.run(cache.get("k")) is None
        assert asyncio.run(cache.set("k", 1)) is False

    def test_clear_deletes_prefixed_keys(self):
        client = _redis_client()
        client.delete.return_value = 2
        seen = {}

        async def scan_iter(match=None):
            seen["match"] = match
            for key in ("t:a", "t:b"):
                yield key

        client.scan_iter = scan_iter
        cache = RedisCache(redis_client=client, prefix="t:")

        asyncio.run(cache.clear())

        assert seen["match"] == "t:*"
        client.delete.assert_awaited_once_with("t:a", "t:b")

    def test_connects_from_url_with_timeouts(self, monkeypatch):
        client = _redis_client()
        from_url = Mock(return_value=client)
        monkeypatch.setattr(cache_module.aioredis.Redis, "from_url", from_url)
        cache = RedisCache(url="redis://localhost:6379/0")

        asyncio.run(cache.get("k"))
        asyncio.run(cache.get("k"))

        from_url.assert_called_once()
        kwargs = from_url.call_args.kwargs
        assert kwargs["decode_responses"] is True
        assert kwargs["socket_connect_timeout"] == cache_module.REDIS_SOCKET_TIMEOUT_SECONDS
        client.ping.assert_awaited_once()

    def test_failed_connect_backs_off(self, monkeypatch):
        """An unreachable Redis is not retried on every call, only after the backoff"""
        client = _redis_client()
        client.ping.side_effect = RedisConnectionError("refused")
        from_url = Mock(return_value=client)
        monkeypatch.setattr(cache_module.aioredis.Redis, "from_url", from_url)
        clock = FakeClock()
        cache = RedisCache(url="redis://localhost:6379/0", reconnect_backoff=30, clock=clock)

        assert asyncio.run(cache.get("k")) is None
        assert asyncio.run(cache.set("k", 1)) is False
        clock.advance(10)
        assert asyncio.run(cache.get("k")) is None
        assert from_url.call_count == 1
        client.aclose.assert_awaited_once()

        clock.advance(25)
        client.ping.side_effect = None
        client.get.return_value = '"v"'
        assert asyncio.run(cache.get("k")) == "v"
        assert from_url.call_count == 2


def test_build_cache_selects_backend():
    """A Redis URL selects RedisCache, otherwise TTLCache"""
    assert isinstance(build_cache(None, 120), TTLCache)
    redis_cache = build_cache("redis://localhost:6379/0", 120)
    assert isinstance(redis_cache, RedisCache)
    assert redis_cache.default_ttl == 120
