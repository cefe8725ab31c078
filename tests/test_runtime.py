"""Tests for runtime startup, fallback and shutdown."""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from bookpath.app import create_app
from bookpath.config import Settings
from bookpath.service.errors import StoreUnavailableError
from bookpath.service.runtime import Runtime, _mask_url_password
from bookpath.storage.memory import MemoryStore
from bookpath.storage.redis_cache import MemoryCache, RedisCache

SECRET = "runtime-test-secret-with-enough-length-0123456789"


class TestStart:
    """Tests for backend selection."""

    async def test_memory_store_and_cache_in_test_mode(self):
        settings = Settings(jwt_secret=SECRET, use_memory_store=True, test_mode=True, redis_url="")

        runtime = await Runtime.start(settings)

        assert isinstance(runtime.store, MemoryStore)
        assert isinstance(runtime.cache, MemoryCache)
        assert runtime.auth.governor is runtime.governor
        await runtime.close()

    async def test_unreachable_redis_refused_outside_dev(self):
        settings = Settings(
            jwt_secret=SECRET,
            use_memory_store=True,
            test_mode=False,
            allow_redis_fallback_dev=False,
            redis_url="redis://localhost:6390/0",
        )

        with patch.object(
            RedisCache, "ping", AsyncMock(side_effect=StoreUnavailableError("redis"))
        ), patch.object(RedisCache, "close", AsyncMock()):
            with pytest.raises(RuntimeError):
                await Runtime.start(settings)

    async def test_unreachable_redis_falls_back_in_dev(self):
        settings = Settings(
            jwt_secret=SECRET,
            use_memory_store=True,
            test_mode=False,
            allow_redis_fallback_dev=True,
            redis_url="redis://localhost:6390/0",
        )

        with patch.object(
            RedisCache, "ping", AsyncMock(side_effect=StoreUnavailableError("redis"))
        ), patch.object(RedisCache, "close", AsyncMock()):
            runtime = await Runtime.start(settings)

        assert isinstance(runtime.cache, MemoryCache)
        await runtime.close()

    async def test_reachable_redis_is_used(self):
        settings = Settings(
            jwt_secret=SECRET, use_memory_store=True, redis_url="redis://localhost:6379/0"
        )

        with patch.object(RedisCache, "ping", AsyncMock()):
            runtime = await Runtime.start(settings)

        assert isinstance(runtime.cache, RedisCache)
        runtime.cache.client.aclose = AsyncMock()
        await runtime.close()


class TestLifespan:
    """Tests for application startup through the lifespan."""

    def test_app_starts_own_runtime(self):
        settings = Settings(jwt_secret=SECRET, use_memory_store=True, test_mode=True, redis_url="")
        app = create_app(settings)

        with TestClient(app) as client:
            assert isinstance(app.state.runtime, Runtime)
            assert client.get("/healthz").json()["status"] == "ok"


class TestMaskUrl:
    """Tests for connection string masking in logs."""

    def test_password_is_masked(self):
        masked = _mask_url_password("postgresql://app:hunter2@db:5432/bookpath")

        assert masked == "postgresql://app:***@db:5432/bookpath"

    def test_url_without_password_is_unchanged(self):
        assert _mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"
