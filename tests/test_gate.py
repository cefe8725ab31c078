"""Unit tests for role and subscription-tier guards."""

from dataclasses import replace

import pytest

from bookpath.service.errors import (
    InsufficientRoleError,
    PrincipalNotFoundError,
    SubscriptionRequiredError,
    UnauthenticatedError,
)
from bookpath.service.gate import (
    ADMIN_ONLY,
    PRO_ONLY,
    USER_ONLY,
    require_role,
    require_tier,
    run_guards,
)
from bookpath.service.tokens import AuthContext
from bookpath.storage.models import Principal, Role, SubscriptionTier


def _ctx(principal, *, load=True):
    claims = {"sub": principal.id, "jti": "jti-1", "role": principal.role.value}
    return AuthContext(principal=principal if load else None, claims=claims, token="t")


@pytest.fixture
def reader():
    return Principal.new("reader@example.com", "reader", "hash")


@pytest.fixture
def admin(reader):
    return replace(reader, role=Role.CHEFAODACASA)


class TestRoleGuard:
    """Tests for role checks."""

    async def test_user_may_not_reach_admin_operations(self, store, reader):
        with pytest.raises(InsufficientRoleError) as exc_info:
            await run_guards(_ctx(reader), [ADMIN_ONLY], store)

        assert exc_info.value.status_code == 403
        assert exc_info.value.detail == {"required_roles": ["chefaodacasa"]}

    async def test_admin_passes_admin_and_user_guards(self, store, admin):
        ctx = await run_guards(_ctx(admin), [USER_ONLY, ADMIN_ONLY], store)

        assert ctx.principal.role == Role.CHEFAODACASA

    async def test_claim_role_used_when_principal_absent(self, store, reader):
        with pytest.raises(InsufficientRoleError):
            await run_guards(_ctx(reader, load=False), [ADMIN_ONLY], store)

    def test_require_role_needs_a_role(self):
        with pytest.raises(ValueError):
            require_role()


class TestTierGuard:
    """Tests for subscription checks."""

    async def test_free_tier_gets_payment_required(self, store, reader):
        with pytest.raises(SubscriptionRequiredError) as exc_info:
            await run_guards(_ctx(reader), [USER_ONLY, PRO_ONLY], store)

        assert exc_info.value.status_code == 402
        assert exc_info.value.detail["current_tier"] == "free"

    async def test_pro_tier_passes(self, store, reader):
        pro = replace(reader, subscription_tier=SubscriptionTier.PRO)

        await run_guards(_ctx(pro), [USER_ONLY, PRO_ONLY], store)

    async def test_role_is_checked_before_tier(self, store, reader):
        guard = require_role(Role.CHEFAODACASA)

        with pytest.raises(InsufficientRoleError):
            await run_guards(_ctx(reader), [guard, PRO_ONLY], store)

    async def test_tier_guard_loads_missing_principal(self, store):
        stored = await store.create_principal("reader@example.com", "reader", "hash")
        await store.update_subscription_tier(stored.id, SubscriptionTier.PRO)
        ctx = _ctx(stored, load=False)

        await run_guards(ctx, [require_tier(SubscriptionTier.PRO)], store)

        assert ctx.principal.subscription_tier == SubscriptionTier.PRO

    async def test_tier_guard_rejects_vanished_principal(self, store, reader):
        with pytest.raises(PrincipalNotFoundError):
            await run_guards(_ctx(reader, load=False), [PRO_ONLY], store)


class TestRunGuards:
    """Tests for the authentication precondition."""

    async def test_missing_context_is_unauthenticated(self, store):
        with pytest.raises(UnauthenticatedError) as exc_info:
            await run_guards(None, [USER_ONLY], store)

        assert exc_info.value.status_code == 401

    async def test_no_guards_only_requires_authentication(self, store, reader):
        ctx = _ctx(reader)

        assert await run_guards(ctx, [], store) is ctx
