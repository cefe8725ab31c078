"""Unit tests for the ephemeral stores.

The Redis tests replace the client and registered scripts with mocks, so no
server is needed.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from bookpath.service.errors import StoreUnavailableError
from bookpath.storage.redis_cache import MemoryCache, RedisCache


class TestMemoryCache:
    """Tests for the in-process cache."""

    async def test_values_expire_lazily(self, cache, clock):
        await cache.set_with_ttl("k", "v", 10)

        clock.advance(seconds=9)
        assert await cache.get("k") == "v"
        clock.advance(seconds=1)
        assert await cache.get("k") is None
        assert not await cache.exists("k")

    async def test_incr_with_ttl_counts(self, cache):
        assert [await cache.incr_with_ttl("n", 60) for _ in range(3)] == [1, 2, 3]
        assert await cache.ttl("n") == 60

    async def test_login_failure_keeps_tripping_past_limit(self, cache):
        results = [
            await cache.record_login_failure("login:a@b.co:2025-03-14", limit=3, ttl_seconds=60)
            for _ in range(4)
        ]

        assert results == [(1, False), (2, False), (3, True), (4, True)]
        assert await cache.get("login:a@b.co:2025-03-14") == "4"

    async def test_concurrent_failures_are_not_lost(self, cache):
        results = await asyncio.gather(
            *(cache.record_login_failure("k", limit=50, ttl_seconds=60) for _ in range(20))
        )

        assert sorted(count for count, _ in results) == list(range(1, 21))
        assert await cache.get("k") == "20"

    async def test_revoked_jti_roundtrip(self, cache):
        assert not await cache.is_jti_revoked("abc")

        await cache.revoke_jti("abc", 30)

        assert await cache.is_jti_revoked("abc")
        assert await cache.ttl("jwt:blacklist:abc") == 30

    async def test_delete_and_close(self, cache):
        await cache.set_with_ttl("k", "v", 10)
        await cache.delete("k")
        assert await cache.get("k") is None

        await cache.set_with_ttl("k", "v", 10)
        await cache.close()
        assert await cache.get("k") is None

    async def test_ttl_floor_is_one_second(self, clock):
        cache = MemoryCache(clock=clock.timestamp)

        await cache.set_with_ttl("k", "v", 0)

        assert await cache.ttl("k") == 1


class TestRedisCache:
    """Tests for Redis command mapping and error translation."""

    @pytest.fixture
    def redis_cache(self):
        return RedisCache("redis://localhost:6379/15", socket_timeout=0.1)

    async def test_login_failure_uses_atomic_script(self, redis_cache):
        redis_cache._login_failure = AsyncMock(return_value=[5, 1])

        result = await redis_cache.record_login_failure(
            "login:a@b.co:2025-03-14", limit=5, ttl_seconds=86400
        )

        assert result == (5, True)
        redis_cache._login_failure.assert_awaited_once_with(
            keys=["login:a@b.co:2025-03-14"], args=[5, 86400]
        )

    def test_login_failure_script_never_deletes_counter(self):
        assert "DEL" not in RedisCache._LOGIN_FAILURE_SCRIPT

    async def test_incr_with_ttl_uses_script(self, redis_cache):
        redis_cache._incr_with_ttl = AsyncMock(return_value=3)

        assert await redis_cache.incr_with_ttl("n", 0) == 3
        redis_cache._incr_with_ttl.assert_awaited_once_with(keys=["n"], args=[1])

    async def test_revoke_sets_blacklist_key_with_expiry(self, redis_cache):
        redis_cache.client.set = AsyncMock()

        await redis_cache.revoke_jti("abc", 930)

        redis_cache.client.set.assert_awaited_once_with("jwt:blacklist:abc", "1", ex=930)

    async def test_is_revoked_checks_existence(self, redis_cache):
        redis_cache.client.exists = AsyncMock(return_value=1)

        assert await redis_cache.is_jti_revoked("abc")
        redis_cache.client.exists.assert_awaited_once_with("jwt:blacklist:abc")

    @pytest.mark.parametrize("error", [RedisConnectionError("down"), RedisTimeoutError("slow")])
    async def test_failures_become_store_unavailable(self, redis_cache, error):
        redis_cache.client.get = AsyncMock(side_effect=error)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await redis_cache.get("k")

        assert exc_info.value.backend == "redis"
        assert exc_info.value.retryable

    async def test_script_failure_becomes_store_unavailable(self, redis_cache):
        redis_cache._login_failure = AsyncMock(side_effect=RedisConnectionError("down"))

        with pytest.raises(StoreUnavailableError):
            await redis_cache.record_login_failure("k", limit=5, ttl_seconds=60)

    async def test_ping_failure_becomes_store_unavailable(self, redis_cache):
        redis_cache.client.ping = AsyncMock(side_effect=OSError("refused"))

        with pytest.raises(StoreUnavailableError):
            await redis_cache.ping()

    async def test_close_releases_client(self, redis_cache):
        redis_cache.client.aclose = AsyncMock()

        await redis_cache.close()

        redis_cache.client.aclose.assert_awaited_once()
