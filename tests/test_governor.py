"""Unit tests for the failed-login governor."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from bookpath.service.errors import AccountLockedError, StoreUnavailableError
from bookpath.service.governor import GovernorState
from bookpath.storage.models import AuditAction


@pytest.fixture
def governor(runtime):
    return runtime.governor


async def _principal(runtime, email="reader@example.com"):
    return await runtime.store.create_principal(email, "reader", "hash")


class TestAttemptKey:
    """Tests for the per-identity, per-day key."""

    def test_key_uses_lowercased_email_and_utc_date(self, governor):
        assert governor.attempt_key(" Reader@Example.com ") == "login:reader@example.com:2025-03-14"

    def test_key_rolls_over_at_midnight(self, governor, clock):
        clock.advance(hours=12)

        assert governor.attempt_key("reader@example.com").endswith("2025-03-15")


class TestRecordFailure:
    """Tests for counting and tripping the lock."""

    async def test_failures_below_limit_return_count(self, runtime, governor):
        principal = await _principal(runtime)

        counts = [await governor.record_failure(principal.email, principal) for _ in range(4)]

        assert counts == [1, 2, 3, 4]
        assert await governor.attempts(principal.email) == 4
        assert await governor.state(principal.email, principal) == GovernorState.WARNING

    async def test_fifth_failure_locks_for_two_minutes(self, runtime, governor, clock):
        principal = await _principal(runtime)
        for _ in range(4):
            await governor.record_failure(principal.email, principal)

        with pytest.raises(AccountLockedError) as exc_info:
            await governor.record_failure(principal.email, principal)

        stored = await runtime.store.get_principal(principal.id)
        assert (stored.account_locked_until - clock()).total_seconds() == 120
        assert stored.failed_login_attempts == 5
        assert exc_info.value.retry_after == 120
        assert exc_info.value.headers["Retry-After"] == "120"
        assert await governor.attempts(principal.email) == 5
        assert await governor.state(principal.email, stored) == GovernorState.LOCKED

    async def test_lock_is_audited(self, runtime, governor):
        principal = await _principal(runtime)
        for _ in range(4):
            await governor.record_failure(principal.email, principal)
        with pytest.raises(AccountLockedError):
            await governor.record_failure(principal.email, principal)

        actions = [e.action for e in runtime.store.audit_events]
        assert AuditAction.ACCOUNT_LOCKED in actions

    async def test_unknown_email_is_counted_but_never_locked(self, governor):
        counts = [await governor.record_failure("ghost@example.com", None) for _ in range(6)]

        assert counts == [1, 2, 3, 4, 5, 6]

    async def test_concurrent_failures_trip_exactly_once(self, runtime, governor):
        principal = await _principal(runtime)

        results = await asyncio.gather(
            *(governor.record_failure(principal.email, principal) for _ in range(5)),
            return_exceptions=True,
        )

        locked = [r for r in results if isinstance(r, AccountLockedError)]
        counts = sorted(r for r in results if isinstance(r, int))
        assert len(locked) == 1
        assert counts == [1, 2, 3, 4]


class TestLockExpiry:
    """Tests for lazy unlock and success reset."""

    async def test_lock_expires_without_intervention(self, runtime, governor, clock):
        principal = await _principal(runtime)
        await runtime.store.lock_principal(principal.id, clock() + timedelta(minutes=2), 5)
        locked = await runtime.store.get_principal(principal.id)

        with pytest.raises(AccountLockedError):
            governor.ensure_not_locked(locked)

        clock.advance(minutes=2)
        governor.ensure_not_locked(locked)
        assert await governor.state(principal.email, locked) == GovernorState.OPEN

    async def test_success_clears_counter_and_lock_mirror(self, runtime, governor, clock):
        principal = await _principal(runtime)
        for _ in range(3):
            await governor.record_failure(principal.email, principal)
        await runtime.store.lock_principal(principal.id, clock(), 3)
        stored = await runtime.store.get_principal(principal.id)

        await governor.record_success(principal.email, stored)

        cleared = await runtime.store.get_principal(principal.id)
        assert await governor.attempts(principal.email) == 0
        assert cleared.account_locked_until is None
        assert cleared.failed_login_attempts == 0

    async def test_counter_expires_after_window(self, runtime, governor, clock):
        principal = await _principal(runtime)
        await governor.record_failure(principal.email, principal)
        key = governor.attempt_key(principal.email)

        assert await runtime.cache.ttl(key) == 86400
        clock.advance(seconds=86400)
        assert await runtime.cache.get(key) is None


class TestCounterAfterLock:
    """Tests for the attempt counter once the lock has tripped."""

    async def test_first_failure_after_lock_lapses_relocks(self, runtime, governor, clock):
        principal = await _principal(runtime)
        for _ in range(4):
            await governor.record_failure(principal.email, principal)
        with pytest.raises(AccountLockedError):
            await governor.record_failure(principal.email, principal)

        clock.advance(minutes=2, seconds=1)
        stored = await runtime.store.get_principal(principal.id)
        governor.ensure_not_locked(stored)

        with pytest.raises(AccountLockedError) as exc_info:
            await governor.record_failure(principal.email, stored)

        relocked = await runtime.store.get_principal(principal.id)
        assert exc_info.value.retry_after == 120
        assert relocked.failed_login_attempts == 6
        assert await governor.attempts(principal.email) == 6

    async def test_failed_lock_write_keeps_count(self, runtime, governor, clock):
        principal = await _principal(runtime)
        for _ in range(4):
            await governor.record_failure(principal.email, principal)
        with patch.object(
            runtime.store,
            "lock_principal",
            AsyncMock(side_effect=StoreUnavailableError("postgres")),
        ):
            with pytest.raises(StoreUnavailableError):
                await governor.record_failure(principal.email, principal)

        assert await governor.attempts(principal.email) == 5
        assert (await runtime.store.get_principal(principal.id)).account_locked_until is None

        with pytest.raises(AccountLockedError):
            await governor.record_failure(principal.email, principal)

        stored = await runtime.store.get_principal(principal.id)
        assert stored.is_locked(clock())
