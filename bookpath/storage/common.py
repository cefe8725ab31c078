"""Storage contracts and helpers shared by the memory, Postgres and Redis backends.

Both stores are process-wide handles built once at startup. Every call is its
own short operation; nothing holds a principal record across calls.
"""

from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple, TypeVar

from bookpath.logging import get_logger
from bookpath.service.errors import StoreUnavailableError
from bookpath.storage.models import (
    AuditEvent,
    PasswordHistoryEntry,
    Principal,
    Role,
    SubscriptionTier,
)

logger = get_logger(__name__)

T = TypeVar("T")

LOGIN_ATTEMPT_PREFIX = "login"
REVOKED_JTI_PREFIX = "jwt:blacklist"
PASSWORD_RESET_PREFIX = "reset"
EMAIL_VERIFICATION_PREFIX = "verify"
COOLDOWN_PREFIX = "cooldown"


def login_attempt_key(email: str, now: datetime) -> str:
    """Attempt counter key for one principal identity and UTC calendar day."""
    return f"{LOGIN_ATTEMPT_PREFIX}:{email.strip().lower()}:{now.strftime('%Y-%m-%d')}"


def revoked_jti_key(jti: str) -> str:
    return f"{REVOKED_JTI_PREFIX}:{jti}"


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def password_reset_key(token: str) -> str:
    """Reset tokens are keyed by digest; the raw token only travels in the email."""
    return f"{PASSWORD_RESET_PREFIX}:{_token_digest(token)}"


def email_verification_key(token: str) -> str:
    return f"{EMAIL_VERIFICATION_PREFIX}:{_token_digest(token)}"


def cooldown_key(purpose: str, subject: str) -> str:
    return f"{COOLDOWN_PREFIX}:{purpose}:{subject.strip().lower()}"


class CredentialStore(Protocol):
    async def create_principal(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        subscription_tier: SubscriptionTier = SubscriptionTier.FREE,
    ) -> Principal: ...

    async def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    async def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    async def list_principals(self, limit: int = 100) -> List[Principal]: ...

    async def apply_password_change(
        self,
        principal_id: str,
        *,
        expected_token_version: int,
        password_hash: str,
        password_history: List[PasswordHistoryEntry],
        token_version: int,
    ) -> Principal: ...

    async def bump_token_version(self, principal_id: str) -> int: ...

    async def lock_principal(
        self, principal_id: str, locked_until: datetime, attempts: int
    ) -> None: ...

    async def clear_lock(self, principal_id: str) -> None: ...

    async def update_role(self, principal_id: str, role: Role) -> Optional[Principal]: ...

    async def update_subscription_tier(
        self, principal_id: str, tier: SubscriptionTier
    ) -> Optional[Principal]: ...

    async def set_two_factor(
        self, principal_id: str, *, secret: Optional[str], enabled: bool
    ) -> None: ...

    async def mark_email_verified(self, principal_id: str) -> None: ...

    async def record_audit_event(self, event: AuditEvent) -> None: ...

    async def list_audit_events(
        self, principal_id: str, limit: int = 100
    ) -> List[AuditEvent]: ...

    async def close(self) -> None: ...


class EphemeralStore(Protocol):
    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int: ...

    async def record_login_failure(
        self, key: str, *, limit: int, ttl_seconds: int
    ) -> Tuple[int, bool]: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def revoke_jti(self, jti: str, ttl_seconds: int) -> None: ...

    async def is_jti_revoked(self, jti: str) -> bool: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


async def retry_read(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int = 2,
    backoff_ms: int = 50,
    label: str = "store_read",
) -> T:
    """Run an idempotent read, retrying ``StoreUnavailableError`` with exponential backoff.

    Only reads go through here; writes are attempted once so that failures are
    never double-counted.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except StoreUnavailableError as exc:
            if attempt >= retries:
                logger.error(
                    "store_read_failed",
                    operation=label,
                    attempts=attempt + 1,
                    backend=exc.backend,
                )
                raise
            delay_ms = backoff_ms * (2 ** attempt)
            logger.warning(
                "store_read_retry",
                operation=label,
                attempt=attempt + 1,
                delay_ms=delay_ms,
                backend=exc.backend,
            )
            await asyncio.sleep(delay_ms / 1000)
            attempt += 1
