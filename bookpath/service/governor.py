from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from bookpath.config import LockoutPolicy
from bookpath.logging import email_fingerprint, get_logger
from bookpath.service.errors import AccountLockedError
from bookpath.storage.common import (
    CredentialStore,
    EphemeralStore,
    login_attempt_key,
    retry_read,
)
from bookpath.storage.models import AuditAction, AuditEvent, Principal, utcnow

logger = get_logger(__name__)


class GovernorState(str, Enum):
    OPEN = "open"
    WARNING = "warning"
    LOCKED = "locked"


class LoginAttemptGovernor:
    """Counts failed logins per email and UTC day and locks the principal at the limit.

    The counter lives in the ephemeral store and is incremented atomically
    there. The lock itself is ``Principal.account_locked_until`` and expires
    lazily: once the wall clock passes it the principal is open again.
    """

    def __init__(
        self,
        cache: EphemeralStore,
        store: CredentialStore,
        policy: Optional[LockoutPolicy] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        read_retries: int = 2,
        retry_backoff_ms: int = 50,
    ) -> None:
        self.cache = cache
        self.store = store
        self.policy = policy or LockoutPolicy()
        self._clock = clock
        self._read_retries = read_retries
        self._retry_backoff_ms = retry_backoff_ms

    def attempt_key(self, email: str) -> str:
        return login_attempt_key(email, self._clock())

    def ensure_not_locked(self, principal: Optional[Principal]) -> None:
        """Raise while the principal is locked; consumes no attempt."""
        if principal is None:
            return
        now = self._clock()
        if principal.is_locked(now):
            logger.info(
                "login_rejected_locked",
                user_id=principal.id,
                unlock_at=principal.account_locked_until.isoformat(),
            )
            raise AccountLockedError(principal.account_locked_until, now=now)

    async def attempts(self, email: str) -> int:
        key = self.attempt_key(email)
        raw = await retry_read(
            lambda: self.cache.get(key),
            retries=self._read_retries,
            backoff_ms=self._retry_backoff_ms,
            label="login_attempts",
        )
        return int(raw or 0)

    async def state(self, email: str, principal: Optional[Principal]) -> GovernorState:
        if principal is not None and principal.is_locked(self._clock()):
            return GovernorState.LOCKED
        if await self.attempts(email) > 0:
            return GovernorState.WARNING
        return GovernorState.OPEN

    async def record_failure(self, email: str, principal: Optional[Principal]) -> int:
        """Count one failed credential check.

        Returns the new count, or raises :class:`AccountLockedError` when this
        failure reaches the limit for an existing principal. The counter is
        left in place, so a lock write that fails is retried by the next
        failure and the first failure after the lock lapses relocks.
        """
        attempts, tripped = await self.cache.record_login_failure(
            self.attempt_key(email),
            limit=self.policy.attempt_limit,
            ttl_seconds=self.policy.attempt_window_seconds,
        )
        logger.warning(
            "login_failed",
            email_hash=email_fingerprint(email),
            user_id=principal.id if principal else None,
            attempts=attempts,
        )
        if not tripped or principal is None:
            return attempts

        now = self._clock()
        unlock_at = now + timedelta(minutes=self.policy.lock_minutes)
        await self.store.lock_principal(principal.id, unlock_at, attempts)
        logger.warning(
            "account_locked",
            user_id=principal.id,
            attempts=attempts,
            unlock_at=unlock_at.isoformat(),
        )
        try:
            await self.store.record_audit_event(
                AuditEvent.new(
                    AuditAction.ACCOUNT_LOCKED,
                    principal.id,
                    metadata={"attempts": attempts, "unlock_at": unlock_at.isoformat()},
                    created_at=now,
                )
            )
        except Exception as exc:
            logger.error("audit_write_failed", action="account_locked", error=str(exc))
        raise AccountLockedError(unlock_at, now=now)

    async def record_success(self, email: str, principal: Principal) -> None:
        await self.cache.delete(self.attempt_key(email))
        if principal.account_locked_until is not None or principal.failed_login_attempts:
            await self.store.clear_lock(principal.id)
