from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from bookpath.logging import get_logger
from bookpath.service.errors import StoreUnavailableError
from bookpath.storage.common import revoked_jti_key

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed ephemeral state: login attempt counters and revoked token ids."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic increment with TTL. The counter survives a trip, so every failure
    # at or past the limit trips again until a success or the TTL clears it.
    _LOGIN_FAILURE_SCRIPT = """
local attempts = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
if attempts >= tonumber(ARGV[1]) then
  return {attempts, 1}
end
return {attempts, 0}
"""

    _INCR_WITH_TTL_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)

    @staticmethod
    def _unavailable(op: str, exc: Exception) -> StoreUnavailableError:
        logger.warning("redis_operation_failed", op=op, error_type=type(exc).__name__, error=str(exc))
        return StoreUnavailableError("redis")

    async def ping(self) -> None:
        try:
            await self.client.ping()
        except (RedisError, OSError) as exc:
            raise self._unavailable("ping", exc) from exc

    async def close(self) -> None:
        await self.client.aclose()

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        try:
            return int(await self._incr_with_ttl(keys=[key], args=[max(1, ttl_seconds)]))
        except (RedisError, OSError) as exc:
            raise self._unavailable("incr_with_ttl", exc) from exc

    async def record_login_failure(
        self, key: str, *, limit: int, ttl_seconds: int
    ) -> Tuple[int, bool]:
        try:
            attempts, tripped = await self._login_failure(
                keys=[key], args=[limit, max(1, ttl_seconds)]
            )
        except (RedisError, OSError) as exc:
            raise self._unavailable("record_login_failure", exc) from exc
        return int(attempts), bool(int(tripped))

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except (RedisError, OSError) as exc:
            raise self._unavailable("get", exc) from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except (RedisError, OSError) as exc:
            raise self._unavailable("delete", exc) from exc

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self.client.set(key, value, ex=max(1, ttl_seconds))
        except (RedisError, OSError) as exc:
            raise self._unavailable("set_with_ttl", exc) from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(key))
        except (RedisError, OSError) as exc:
            raise self._unavailable("exists", exc) from exc

    async def revoke_jti(self, jti: str, ttl_seconds: int) -> None:
        await self.set_with_ttl(revoked_jti_key(jti), "1", ttl_seconds)

    async def is_jti_revoked(self, jti: str) -> bool:
        return await self.exists(revoked_jti_key(jti))


class MemoryCache:
    """In-process stand-in for :class:`RedisCache` used in tests and local fallback.

    Each operation runs under one asyncio lock, so increments are never lost
    between concurrent tasks. Expiry is evaluated lazily against ``clock``.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        self._values.clear()

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            current = int(self._live(key) or 0) + 1
            self._values[key] = (str(current), self._clock() + max(1, ttl_seconds))
            return current

    async def record_login_failure(
        self, key: str, *, limit: int, ttl_seconds: int
    ) -> Tuple[int, bool]:
        async with self._lock:
            attempts = int(self._live(key) or 0) + 1
            self._values[key] = (str(attempts), self._clock() + max(1, ttl_seconds))
            return attempts, attempts >= limit

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._values.pop(key, None)

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._values[key] = (value, self._clock() + max(1, ttl_seconds))

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime in seconds, or None when the key is absent."""
        async with self._lock:
            if self._live(key) is None:
                return None
            expires_at = self._values[key][1]
            if expires_at is None:
                return None
            return int(round(expires_at - self._clock()))

    async def revoke_jti(self, jti: str, ttl_seconds: int) -> None:
        await self.set_with_ttl(revoked_jti_key(jti), "1", ttl_seconds)

    async def is_jti_revoked(self, jti: str) -> bool:
        return await self.exists(revoked_jti_key(jti))
