from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from bookpath.api.schemas import (
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    UpdateRoleRequest,
    UpdateTierRequest,
    UserListResponse,
    UserResponse,
)
from bookpath.service.gate import ADMIN_ONLY, PRO_ONLY, USER_ONLY, Guard, run_guards
from bookpath.service.runtime import Runtime
from bookpath.service.tokens import AuthContext, TokenPair


router = APIRouter(prefix="/v1")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _client_info(request: Request) -> dict[str, Optional[str]]:
    return {
        "ip_addr": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_at=pair.expires_at,
        refresh_expires_at=pair.refresh_expires_at,
    )


async def get_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Validate the bearer token: signature, revocation, principal, version, lock."""
    runtime = get_runtime(request)
    return await runtime.auth.authenticate_request(authorization)


def guarded(*guards: Guard):
    """Build a dependency that authenticates and then runs ``guards`` in order."""

    async def dependency(
        request: Request, ctx: AuthContext = Depends(get_auth_context)
    ) -> AuthContext:
        return await run_guards(ctx, guards, get_runtime(request).store)

    return dependency


get_user = guarded(USER_ONLY)
get_admin_user = guarded(ADMIN_ONLY)
get_pro_user = guarded(USER_ONLY, PRO_ONLY)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime(request)
    principal = await runtime.auth.register(
        body.username, body.email, body.password, **_client_info(request)
    )
    return Envelope(status="ok", data=UserResponse.from_principal(principal))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password (plus a TOTP code when enabled).

    Raises:
        401: unknown email or wrong password (indistinguishable), or missing TOTP code
        429: account locked; ``Retry-After`` carries the seconds until unlock
    """
    runtime = get_runtime(request)
    principal, pair = await runtime.auth.login(
        body.email,
        body.password,
        totp_code=body.totp_code,
        **_client_info(request),
    )
    token = _token_response(pair)
    return Envelope(
        status="ok",
        data=AuthResponse(**token.model_dump(), user=UserResponse.from_principal(principal)),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime(request)
    _, pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime(request)
    await runtime.auth.logout(ctx, refresh_token=body.refresh_token if body else None)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime(request)
    version = await runtime.auth.logout_all(ctx.principal)
    return Envelope(
        status="ok",
        data={"message": "all sessions revoked", "token_version": version},
    )


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
):
    """Change the current user's password.

    Every token issued before the change stops validating; the response
    carries a fresh pair.
    """
    runtime = get_runtime(request)
    pair = await runtime.auth.change_password(
        ctx.principal,
        body.current_password,
        body.new_password,
        **_client_info(request),
    )
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/password/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    """Email a reset link; the response is the same whether or not the account exists."""
    runtime = get_runtime(request)
    token = await runtime.auth.request_password_reset(body.email, **_client_info(request))
    if token:
        # SMTP is blocking
        await asyncio.to_thread(runtime.email.send_password_reset, body.email, token)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm, request: Request):
    """Set a new password from a reset token; every earlier session is invalidated."""
    runtime = get_runtime(request)
    await runtime.auth.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/email/verify/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(
    request: Request, ctx: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime(request)
    token = await runtime.auth.request_email_verification(ctx.principal)
    await asyncio.to_thread(runtime.email.send_email_verification, ctx.principal.email, token)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request):
    runtime = get_runtime(request)
    principal = await runtime.auth.complete_email_verification(body.token)
    return Envelope(status="ok", data=UserResponse.from_principal(principal))


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
async def two_factor_setup(request: Request, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime(request)
    challenge = await runtime.auth.setup_two_factor(ctx.principal)
    return Envelope(status="ok", data=challenge)


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def two_factor_enable(
    body: TwoFactorCodeRequest,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime(request)
    await runtime.auth.enable_two_factor(ctx.principal, body.code)
    return Envelope(status="ok", data={"two_factor_enabled": True})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def two_factor_disable(
    body: TwoFactorDisableRequest,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime(request)
    await runtime.auth.disable_two_factor(ctx.principal, body.password)
    return Envelope(status="ok", data={"two_factor_enabled": False})


@router.get("/me", response_model=Envelope, tags=["users"])
async def get_me(ctx: AuthContext = Depends(get_user)):
    return Envelope(status="ok", data=UserResponse.from_principal(ctx.principal))


@router.get("/me/export", response_model=Envelope, tags=["users"])
async def export_me(request: Request, ctx: AuthContext = Depends(get_pro_user)):
    runtime = get_runtime(request)
    export = await runtime.auth.export_account(ctx.principal)
    export["profile"] = UserResponse.from_principal(ctx.principal)
    return Envelope(status="ok", data=export)


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime(request)
    principals = await runtime.auth.list_principals(limit)
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserResponse.from_principal(p) for p in principals]),
    )


@router.patch("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: UpdateRoleRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime(request)
    principal = await runtime.auth.set_role(user_id, body.role, actor_id=ctx.user_id)
    return Envelope(status="ok", data=UserResponse.from_principal(principal))


@router.patch("/admin/users/{user_id}/tier", response_model=Envelope, tags=["admin"])
async def admin_set_tier(
    body: UpdateTierRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime(request)
    principal = await runtime.auth.set_subscription_tier(
        user_id, body.subscription_tier, actor_id=ctx.user_id
    )
    return Envelope(status="ok", data=UserResponse.from_principal(principal))
