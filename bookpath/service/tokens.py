from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from bookpath.config import TokenPolicy
from bookpath.logging import get_logger
from bookpath.service.errors import (
    AccountLockedError,
    InvalidTokenError,
    PrincipalNotFoundError,
    TokenExpiredError,
    TokenRevokedError,
    TokenStaleError,
)
from bookpath.storage.common import CredentialStore, EphemeralStore, retry_read
from bookpath.storage.models import Principal, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
_REQUIRED_CLAIMS = ("sub", "jti", "token_version", "exp")


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class AuthContext:
    """An authenticated request: the token's claims and, once loaded, its principal."""

    principal: Optional[Principal]
    claims: dict[str, Any]
    token: str

    @property
    def user_id(self) -> str:
        return self.claims["sub"]

    @property
    def jti(self) -> str:
        return self.claims["jti"]


class TokenService:
    """Issues and validates HS256 JWTs bound to a principal's token version.

    Two independent revocation paths exist: a per-token marker keyed by
    ``jti`` (single logout) and the principal's ``token_version`` (every
    outstanding token at once).
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: EphemeralStore,
        policy: TokenPolicy,
        *,
        clock: Callable[[], datetime] = utcnow,
        read_retries: int = 2,
        retry_backoff_ms: int = 50,
    ) -> None:
        self.store = store
        self.cache = cache
        self.policy = policy
        self._clock = clock
        self._read_retries = read_retries
        self._retry_backoff_ms = retry_backoff_ms

    def _secret_for(self, token_type: str) -> bytes:
        secret = self.policy.refresh_secret if token_type == REFRESH else self.policy.secret
        return secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secret_for(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def issue(self, principal: Principal, token_type: str = ACCESS) -> IssuedToken:
        now = self._clock()
        ttl = (
            self.policy.refresh_ttl_minutes
            if token_type == REFRESH
            else self.policy.access_ttl_minutes
        )
        expires_at = now + timedelta(minutes=ttl)
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.policy.issuer,
            "aud": self.policy.audience,
            "sub": principal.id,
            "jti": jti,
            "role": principal.role.value,
            "token_version": principal.token_version,
            "token_type": token_type,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return IssuedToken(
            token=self._encode_jwt(payload, token_type),
            jti=jti,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def issue_pair(self, principal: Principal) -> TokenPair:
        access = self.issue(principal, ACCESS)
        refresh = self.issue(principal, REFRESH)
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    def decode(self, token: str, *, token_type: str = ACCESS) -> dict[str, Any]:
        """Verify signature, issuer, audience, type and expiry; return the claims.

        Cryptographic failures are final and never retried.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("malformed token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed token header") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise InvalidTokenError("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(self._secret_for(token_type), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("invalid token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed token payload") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token payload")

        if payload.get("iss") != self.policy.issuer:
            raise InvalidTokenError("unexpected token issuer")
        aud = payload.get("aud")
        valid_aud = aud == self.policy.audience or (
            isinstance(aud, list) and self.policy.audience in aud
        )
        if not valid_aud:
            raise InvalidTokenError("unexpected token audience")
        if payload.get("token_type") != token_type:
            raise InvalidTokenError(f"expected {token_type} token")
        if any(payload.get(claim) is None for claim in _REQUIRED_CLAIMS):
            raise InvalidTokenError("token is missing required claims")
        if not isinstance(payload["token_version"], int) or isinstance(payload["token_version"], bool):
            raise InvalidTokenError("token version claim must be an integer")
        try:
            exp_ts = float(payload["exp"])
        except (TypeError, ValueError):
            raise InvalidTokenError("invalid expiry claim") from None
        if exp_ts <= self._clock().timestamp() - self.policy.clock_skew_seconds:
            raise TokenExpiredError("token has expired")
        return payload

    async def validate(self, token: str, *, token_type: str = ACCESS) -> AuthContext:
        """Full validation, in order: signature and expiry, revocation, principal, version, lock.

        An unreachable store propagates as ``StoreUnavailableError``, so the
        request is rejected rather than authorised.
        """
        claims = self.decode(token, token_type=token_type)
        jti = claims["jti"]

        revoked = await retry_read(
            lambda: self.cache.is_jti_revoked(jti),
            retries=self._read_retries,
            backoff_ms=self._retry_backoff_ms,
            label="jti_revocation",
        )
        if revoked:
            raise TokenRevokedError("token has been revoked")

        principal = await retry_read(
            lambda: self.store.get_principal(claims["sub"]),
            retries=self._read_retries,
            backoff_ms=self._retry_backoff_ms,
            label="principal_lookup",
        )
        if principal is None:
            raise PrincipalNotFoundError("token subject no longer exists")

        if claims["token_version"] != principal.token_version:
            logger.info(
                "token_stale",
                user_id=principal.id,
                claim_version=claims["token_version"],
                current_version=principal.token_version,
            )
            raise TokenStaleError("token is no longer valid; please sign in again")

        now = self._clock()
        if principal.is_locked(now):
            raise AccountLockedError(principal.account_locked_until, now=now)

        return AuthContext(principal=principal, claims=claims, token=token)

    def remaining_ttl(self, claims: dict[str, Any]) -> int:
        """Seconds a revocation marker must outlive the token, skew included."""
        return int(float(claims["exp"]) + self.policy.clock_skew_seconds - self._clock().timestamp())

    async def revoke_claims(self, claims: dict[str, Any]) -> None:
        ttl = self.remaining_ttl(claims)
        if ttl <= 0:
            return
        await self.cache.revoke_jti(claims["jti"], ttl)
        logger.info("token_revoked", jti=claims["jti"], ttl_seconds=ttl)

    async def revoke(self, token: str, *, token_type: str = ACCESS) -> None:
        try:
            claims = self.decode(token, token_type=token_type)
        except TokenExpiredError:
            # Already unusable; nothing to record
            return
        await self.revoke_claims(claims)

    async def refresh(self, refresh_token: str) -> tuple[Principal, TokenPair]:
        """Exchange a refresh token for a new pair; the presented token is revoked."""
        ctx = await self.validate(refresh_token, token_type=REFRESH)
        await self.revoke_claims(ctx.claims)
        return ctx.principal, self.issue_pair(ctx.principal)
