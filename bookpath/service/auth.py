from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
from datetime import datetime
from typing import Any, Callable, List, Optional
from urllib.parse import quote

from bookpath.logging import email_fingerprint, get_logger
from bookpath.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    PolicyViolationError,
    RateLimitedError,
    TwoFactorRequiredError,
    UnauthenticatedError,
    ValidationError,
)
from bookpath.service.governor import LoginAttemptGovernor
from bookpath.service.passwords import (
    AuditRecord,
    Effect,
    PasswordPolicy,
    PersistPasswordChange,
    plan_password_change,
)
from bookpath.service.tokens import REFRESH, AuthContext, TokenPair, TokenService
from bookpath.storage.common import (
    CredentialStore,
    EphemeralStore,
    cooldown_key,
    email_verification_key,
    password_reset_key,
    retry_read,
)
from bookpath.storage.errors import ConstraintViolation
from bookpath.storage.models import (
    AuditAction,
    AuditEvent,
    Principal,
    Role,
    SubscriptionTier,
    utcnow,
)

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


class AuthService:
    """Credential flows for principals.

    Login and request authentication, password change and reset, email
    verification, logout and two-factor setup all go through here.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: EphemeralStore,
        passwords: PasswordPolicy,
        governor: LoginAttemptGovernor,
        tokens: TokenService,
        *,
        clock: Callable[[], datetime] = utcnow,
        totp_issuer: str = "BookPath",
        read_retries: int = 2,
        retry_backoff_ms: int = 50,
        reset_ttl_minutes: int = 60,
        verification_ttl_hours: int = 24,
        request_cooldown_seconds: int = 900,
    ) -> None:
        self.store = store
        self.cache = cache
        self.passwords = passwords
        self.governor = governor
        self.tokens = tokens
        self.totp_issuer = totp_issuer
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours
        self.request_cooldown_seconds = request_cooldown_seconds
        self._clock = clock
        self._read_retries = read_retries
        self._retry_backoff_ms = retry_backoff_ms
        self._dummy_hash: Optional[str] = None

    async def _read(self, operation, label: str):
        return await retry_read(
            operation,
            retries=self._read_retries,
            backoff_ms=self._retry_backoff_ms,
            label=label,
        )

    async def _load(self, principal_id: str) -> Principal:
        principal = await self._read(
            lambda: self.store.get_principal(principal_id), "principal_lookup"
        )
        if principal is None:
            raise NotFoundError("user not found", detail={"user_id": principal_id})
        return principal

    async def _audit(
        self,
        action: AuditAction,
        user_id: Optional[str],
        *,
        metadata: Optional[dict] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        try:
            await self.store.record_audit_event(
                AuditEvent.new(
                    action,
                    user_id,
                    metadata=metadata,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    created_at=self._clock(),
                )
            )
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=action.value,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _perform(self, effects: List[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, PersistPasswordChange):
                await self.store.apply_password_change(
                    effect.principal_id,
                    expected_token_version=effect.expected_token_version,
                    password_hash=effect.password_hash,
                    password_history=effect.password_history,
                    token_version=effect.token_version,
                )
            elif isinstance(effect, AuditRecord):
                await self._audit(effect.action, effect.principal_id, metadata=effect.metadata)
            else:
                raise TypeError(f"unknown effect {type(effect).__name__}")

    def _check_new_password(self, current: Principal, new_password: str) -> None:
        self.passwords.validate_complexity(new_password)
        if self.passwords.verify(new_password, current.password_hash):
            raise PolicyViolationError(
                "new password must be different from the current password",
                detail={"reason": "same_as_current"},
            )
        if self.passwords.is_reused(new_password, current.password_history):
            raise PolicyViolationError(
                f"password was used within the last {self.passwords.history_size} changes",
                detail={"reason": "reused"},
            )

    async def _enforce_cooldown(self, purpose: str, subject: str) -> None:
        """Allow one request per subject per cooldown; each repeat restarts the window."""
        if self.request_cooldown_seconds <= 0:
            return
        count = await self.cache.incr_with_ttl(
            cooldown_key(purpose, subject), self.request_cooldown_seconds
        )
        if count > 1:
            raise RateLimitedError(
                "a link was sent recently; check your inbox or try again later",
                retry_after=self.request_cooldown_seconds,
            )

    def _burn_verification(self, password: str) -> None:
        """Spend one hash verification so unknown emails cost the same as wrong passwords."""
        if self._dummy_hash is None:
            self._dummy_hash = self.passwords.hash(os.urandom(16).hex())
        self.passwords.verify(password, self._dummy_hash)

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Principal:
        self.passwords.validate_complexity(password)
        try:
            principal = await self.store.create_principal(
                email, username, self.passwords.hash(password)
            )
        except ConstraintViolation as exc:
            raise ConflictError("a user with this email or username already exists", detail=exc.detail) from exc
        logger.info("user_registered", user_id=principal.id, email_hash=email_fingerprint(email))
        await self._audit(
            AuditAction.USER_CREATED, principal.id, ip_addr=ip_addr, user_agent=user_agent
        )
        return principal

    async def login(
        self,
        email: str,
        password: str,
        *,
        totp_code: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[Principal, TokenPair]:
        """Check the lock, verify credentials (and TOTP when enabled), then issue tokens.

        Unknown email and wrong password raise the same
        :class:`InvalidCredentialsError`. A locked principal is rejected before
        the password is looked at.
        """
        principal = await self._read(
            lambda: self.store.get_principal_by_email(email), "principal_by_email"
        )
        self.governor.ensure_not_locked(principal)

        if principal is None:
            self._burn_verification(password)
            await self.governor.record_failure(email, None)
            raise InvalidCredentialsError()

        if not self.passwords.verify(password, principal.password_hash):
            await self._audit(
                AuditAction.LOGIN_FAILED,
                principal.id,
                metadata={"reason": "password"},
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            await self.governor.record_failure(email, principal)
            raise InvalidCredentialsError()

        if principal.two_factor_enabled:
            if not totp_code:
                raise TwoFactorRequiredError(
                    "two-factor code required", detail={"mfa_required": True}
                )
            if not self._verify_totp(principal.two_factor_secret, totp_code):
                await self._audit(
                    AuditAction.LOGIN_FAILED,
                    principal.id,
                    metadata={"reason": "totp"},
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                )
                await self.governor.record_failure(email, principal)
                raise InvalidCredentialsError("invalid two-factor code")

        await self.governor.record_success(email, principal)
        pair = self.tokens.issue_pair(principal)
        logger.info("login_success", user_id=principal.id, token_version=principal.token_version)
        await self._audit(
            AuditAction.LOGIN_SUCCESS, principal.id, ip_addr=ip_addr, user_agent=user_agent
        )
        return principal, pair

    @staticmethod
    def extract_bearer(header: Optional[str]) -> str:
        if not header:
            raise UnauthenticatedError("authentication required")
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise UnauthenticatedError("authorization header must use the Bearer scheme")
        return token.strip()

    async def authenticate_request(self, authorization: Optional[str]) -> AuthContext:
        return await self.tokens.validate(self.extract_bearer(authorization))

    async def refresh(self, refresh_token: str) -> tuple[Principal, TokenPair]:
        principal, pair = await self.tokens.refresh(refresh_token)
        await self._audit(AuditAction.TOKEN_REFRESHED, principal.id)
        return principal, pair

    async def change_password(
        self,
        principal: Principal,
        current_password: str,
        new_password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Replace the password and invalidate every token issued before the change.

        Returns a fresh token pair bound to the new token version.
        """
        current = await self._load(principal.id)
        if not self.passwords.verify(current_password, current.password_hash):
            raise InvalidCredentialsError("current password is incorrect")
        self._check_new_password(current, new_password)

        change = plan_password_change(
            current,
            self.passwords.hash(new_password),
            history_size=self.passwords.history_size,
            now=self._clock(),
        )
        await self._perform(change.effects)
        logger.info(
            "password_changed",
            user_id=current.id,
            token_version=change.principal.token_version,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return self.tokens.issue_pair(change.principal)

    async def logout(self, ctx: AuthContext, *, refresh_token: Optional[str] = None) -> None:
        """Revoke the presented access token and, if given, its refresh token."""
        refresh_claims = None
        if refresh_token:
            refresh_claims = self.tokens.decode(refresh_token, token_type=REFRESH)
            if refresh_claims["sub"] != ctx.user_id:
                raise InvalidTokenError("refresh token belongs to another user")
        await self.tokens.revoke_claims(ctx.claims)
        if refresh_claims:
            await self.tokens.revoke_claims(refresh_claims)
        await self._audit(AuditAction.LOGOUT, ctx.user_id, metadata={"jti": ctx.jti})

    async def logout_all(self, principal: Principal) -> int:
        """Invalidate every outstanding token for ``principal`` by bumping its version."""
        version = await self.store.bump_token_version(principal.id)
        logger.info("logout_all", user_id=principal.id, token_version=version)
        await self._audit(AuditAction.LOGOUT_ALL, principal.id, metadata={"token_version": version})
        return version

    async def setup_two_factor(self, principal: Principal) -> dict[str, str]:
        current = await self._load(principal.id)
        if current.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        await self.store.set_two_factor(current.id, secret=secret, enabled=False)
        label = quote(f"{self.totp_issuer}:{current.email}")
        uri = (
            f"otpauth://totp/{label}?secret={secret}"
            f"&issuer={quote(self.totp_issuer)}&digits={TOTP_DIGITS}&period={TOTP_INTERVAL}"
        )
        return {"secret": secret, "otpauth_uri": uri}

    async def enable_two_factor(self, principal: Principal, code: str) -> None:
        current = await self._load(principal.id)
        if current.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        if not current.two_factor_secret:
            raise ValidationError("two-factor setup has not been started")
        if not self._verify_totp(current.two_factor_secret, code):
            raise ValidationError("invalid two-factor code")
        await self.store.set_two_factor(current.id, secret=current.two_factor_secret, enabled=True)
        await self._audit(AuditAction.TWO_FACTOR_ENABLED, current.id)

    async def disable_two_factor(self, principal: Principal, password: str) -> None:
        current = await self._load(principal.id)
        if not self.passwords.verify(password, current.password_hash):
            raise InvalidCredentialsError("password is incorrect")
        await self.store.set_two_factor(current.id, secret=None, enabled=False)
        await self._audit(AuditAction.TWO_FACTOR_DISABLED, current.id)

    async def request_password_reset(
        self,
        email: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Issue a single-use reset token for ``email``.

        Returns None when no principal has this email; callers answer both
        cases identically. The cooldown is charged for unknown emails too, so
        its 429 says nothing about whether the account exists.
        """
        await self._enforce_cooldown("password_reset", email)
        principal = await self._read(
            lambda: self.store.get_principal_by_email(email), "principal_by_email"
        )
        if principal is None:
            logger.info("password_reset_unknown_email", email_hash=email_fingerprint(email))
            return None
        token = secrets.token_urlsafe(32)
        await self.cache.set_with_ttl(
            password_reset_key(token), principal.id, self.reset_ttl_minutes * 60
        )
        logger.info("password_reset_requested", user_id=principal.id)
        await self._audit(
            AuditAction.PASSWORD_RESET_REQUESTED,
            principal.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> Principal:
        """Set a new password from a reset token.

        Runs the same plan as a password change: the outgoing hash joins the
        history, reuse is refused and the token version advances, so every
        session issued before the reset stops validating. The token is
        consumed before the write. Completing a reset proves control of the
        mailbox, so the email is marked verified.
        """
        key = password_reset_key(token)
        principal_id = await self._read(lambda: self.cache.get(key), "password_reset_token")
        current = None
        if principal_id:
            current = await self._read(
                lambda: self.store.get_principal(principal_id), "principal_lookup"
            )
        if current is None:
            logger.warning("password_reset_invalid_token")
            raise ValidationError("invalid or expired reset token")

        self._check_new_password(current, new_password)
        change = plan_password_change(
            current,
            self.passwords.hash(new_password),
            history_size=self.passwords.history_size,
            now=self._clock(),
            action=AuditAction.PASSWORD_RESET,
        )
        await self.cache.delete(key)
        await self._perform(change.effects)
        if not current.email_verified:
            await self.store.mark_email_verified(current.id)
        logger.info(
            "password_reset_completed",
            user_id=current.id,
            token_version=change.principal.token_version,
        )
        return await self._load(current.id)

    async def request_email_verification(self, principal: Principal) -> str:
        """Issue a verification token for the principal's current email."""
        current = await self._load(principal.id)
        if current.email_verified:
            raise ValidationError("email is already verified")
        await self._enforce_cooldown("email_verification", current.id)
        token = secrets.token_urlsafe(32)
        await self.cache.set_with_ttl(
            email_verification_key(token), current.id, self.verification_ttl_hours * 3600
        )
        logger.info("email_verification_requested", user_id=current.id)
        return token

    async def complete_email_verification(self, token: str) -> Principal:
        key = email_verification_key(token)
        principal_id = await self._read(
            lambda: self.cache.get(key), "email_verification_token"
        )
        if not principal_id:
            logger.warning("email_verification_invalid_token")
            raise ValidationError("invalid or expired verification token")
        await self.cache.delete(key)
        await self.store.mark_email_verified(principal_id)
        logger.info("email_verified", user_id=principal_id)
        await self._audit(AuditAction.EMAIL_VERIFIED, principal_id)
        return await self._load(principal_id)

    async def list_principals(self, limit: int = 100) -> List[Principal]:
        return await self._read(lambda: self.store.list_principals(limit), "list_principals")

    async def set_role(self, user_id: str, role: Role, *, actor_id: str) -> Principal:
        principal = await self.store.update_role(user_id, Role(role))
        if principal is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("role_changed", user_id=user_id, role=principal.role.value, actor_id=actor_id)
        await self._audit(
            AuditAction.ROLE_CHANGED,
            user_id,
            metadata={"role": principal.role.value, "actor_id": actor_id},
        )
        return principal

    async def set_subscription_tier(
        self, user_id: str, tier: SubscriptionTier, *, actor_id: str
    ) -> Principal:
        principal = await self.store.update_subscription_tier(user_id, SubscriptionTier(tier))
        if principal is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        await self._audit(
            AuditAction.TIER_CHANGED,
            user_id,
            metadata={"tier": principal.subscription_tier.value, "actor_id": actor_id},
        )
        return principal

    async def export_account(self, principal: Principal) -> dict[str, Any]:
        events = await self._read(
            lambda: self.store.list_audit_events(principal.id), "audit_events"
        )
        return {
            "user_id": principal.id,
            "audit_events": [
                {
                    "action": e.action.value,
                    "created_at": e.created_at.isoformat(),
                    "metadata": e.metadata,
                }
                for e in events
            ],
        }

    def _verify_totp(self, secret: Optional[str], code: str) -> bool:
        if not secret or not code:
            return False
        now = self._clock().timestamp()
        # One adjacent step either side for clock skew
        for offset in (-1, 0, 1):
            generated = self._generate_totp(secret, now + offset * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated, code.strip()):
                return True
        return False

    def _generate_totp(self, secret: str, timestamp: float) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except ValueError:
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // TOTP_INTERVAL).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)
