from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from bookpath.config import Settings
from bookpath.logging import get_logger
from bookpath.service.auth import AuthService
from bookpath.service.email import EmailService
from bookpath.service.errors import StoreUnavailableError
from bookpath.service.governor import LoginAttemptGovernor
from bookpath.service.passwords import PasswordPolicy
from bookpath.service.tokens import TokenService
from bookpath.storage.memory import MemoryStore
from bookpath.storage.models import utcnow
from bookpath.storage.postgres import PostgresStore
from bookpath.storage.redis_cache import MemoryCache, RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Process-wide store handles and the services wired on top of them.

    Built by :meth:`start` at application startup and released by
    :meth:`close` at shutdown. Request handlers reach it through
    ``app.state.runtime``.
    """

    def __init__(
        self,
        settings: Settings,
        store: Union[MemoryStore, PostgresStore],
        cache: Union[MemoryCache, RedisCache],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        retry = {
            "read_retries": settings.store_read_retries,
            "retry_backoff_ms": settings.store_retry_backoff_ms,
        }
        self.passwords = PasswordPolicy(settings.password_policy())
        self.governor = LoginAttemptGovernor(
            cache, store, settings.lockout_policy(), clock=clock, **retry
        )
        self.tokens = TokenService(store, cache, settings.token_policy(), clock=clock, **retry)
        self.auth = AuthService(
            store,
            cache,
            self.passwords,
            self.governor,
            self.tokens,
            clock=clock,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
            verification_ttl_hours=settings.email_verification_ttl_hours,
            request_cooldown_seconds=settings.email_request_cooldown_seconds,
            **retry,
        )
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from,
            base_url=settings.app_base_url,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
            verification_ttl_hours=settings.email_verification_ttl_hours,
        )

    @classmethod
    async def start(
        cls,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> "Runtime":
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )
        store = await cls._build_store(settings)
        try:
            cache = await cls._build_cache(settings)
        except Exception:
            await store.close()
            raise
        runtime = cls(settings, store, cache, clock=clock)
        logger.info(
            "runtime_ready",
            store_type=type(store).__name__,
            cache_type=type(cache).__name__,
        )
        return runtime

    @staticmethod
    async def _build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
        if settings.use_memory_store:
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryStore(encryption_key=settings.fernet_key())
        store = PostgresStore(
            settings.database_url,
            encryption_key=settings.fernet_key(),
            timeout_seconds=settings.store_timeout_seconds,
        )
        try:
            await store.open()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="postgres",
                database_url=_mask_url_password(settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type="postgres")
        return store

    @staticmethod
    async def _build_cache(settings: Settings) -> Union[MemoryCache, RedisCache]:
        redis_error: Exception | None = None
        if settings.redis_url:
            cache = RedisCache(settings.redis_url, socket_timeout=settings.store_timeout_seconds)
            try:
                await cache.ping()
                return cache
            except StoreUnavailableError as exc:
                redis_error = exc
                await cache.close()

        if not settings.test_mode and not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for login attempt counters and token revocation; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; attempt counters and "
                "revoked tokens are per-process and lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        for name, resource in (("cache", self.cache), ("store", self.store)):
            try:
                await resource.close()
            except Exception as exc:
                logger.error("runtime_close_failed", resource=name, error=str(exc))
        logger.info("runtime_closed")
