"""Role and subscription-tier guards composed in front of request handlers.

A guard is an async callable ``guard(ctx, store)`` that returns ``None`` on
success and raises a :class:`ServiceError` on failure. :func:`run_guards`
checks authentication first, then runs the guards one after another and stops
at the first failure.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Iterable, Optional

from bookpath.logging import get_logger
from bookpath.service.errors import (
    InsufficientRoleError,
    PrincipalNotFoundError,
    SubscriptionRequiredError,
    UnauthenticatedError,
)
from bookpath.service.tokens import AuthContext
from bookpath.storage.common import CredentialStore
from bookpath.storage.models import Role, SubscriptionTier

logger = get_logger(__name__)

Guard = Callable[[Optional[AuthContext], CredentialStore], Awaitable[None]]


def require_authenticated(ctx: Optional[AuthContext]) -> AuthContext:
    if ctx is None:
        raise UnauthenticatedError("authentication required")
    return ctx


def require_role(*roles: Role) -> Guard:
    allowed = frozenset(Role(r) for r in roles)
    if not allowed:
        raise ValueError("require_role needs at least one role")

    async def guard(ctx: Optional[AuthContext], store: CredentialStore) -> None:
        ctx = require_authenticated(ctx)
        # Validated tokens always carry a loaded principal; the claim is a fallback
        role = ctx.principal.role if ctx.principal else Role(ctx.claims.get("role", Role.USER))
        if role not in allowed:
            logger.warning(
                "role_denied",
                user_id=ctx.user_id,
                role=role.value,
                allowed=sorted(r.value for r in allowed),
            )
            raise InsufficientRoleError(
                "you do not have permission to perform this action",
                detail={"required_roles": sorted(r.value for r in allowed)},
            )

    guard.__name__ = f"require_role({','.join(sorted(r.value for r in allowed))})"
    return guard


def require_tier(*tiers: SubscriptionTier) -> Guard:
    allowed = frozenset(SubscriptionTier(t) for t in tiers)
    if not allowed:
        raise ValueError("require_tier needs at least one tier")

    async def guard(ctx: Optional[AuthContext], store: CredentialStore) -> None:
        ctx = require_authenticated(ctx)
        principal = ctx.principal
        if principal is None:
            principal = await store.get_principal(ctx.claims["sub"])
            if principal is None:
                raise PrincipalNotFoundError("token subject no longer exists")
            ctx.principal = principal
        if principal.subscription_tier not in allowed:
            logger.info(
                "tier_denied",
                user_id=principal.id,
                tier=principal.subscription_tier.value,
                allowed=sorted(t.value for t in allowed),
            )
            raise SubscriptionRequiredError(
                "upgrade your subscription to use this feature",
                detail={
                    "required_tiers": sorted(t.value for t in allowed),
                    "current_tier": principal.subscription_tier.value,
                },
            )

    guard.__name__ = f"require_tier({','.join(sorted(t.value for t in allowed))})"
    return guard


async def run_guards(
    ctx: Optional[AuthContext],
    guards: Iterable[Guard],
    store: CredentialStore,
) -> AuthContext:
    ctx = require_authenticated(ctx)
    for guard in guards:
        await guard(ctx, store)
    return ctx


ADMIN_ONLY = require_role(Role.CHEFAODACASA)
USER_ONLY = require_role(Role.USER, Role.CHEFAODACASA)
PRO_ONLY = require_tier(SubscriptionTier.PRO)
