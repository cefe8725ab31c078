from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional


class ServiceError(Exception):
    """Base class for auth outcomes mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable, machine-readable
    ``error_code``. Only :class:`StoreUnavailableError` is ``retryable``; every
    other kind is terminal for the current request.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class PolicyViolationError(ValidationError):
    """Password complexity or reuse rule violated (400)."""
    error_code = "policy_violation"


class UnauthenticatedError(ServiceError):
    """No usable credentials were presented (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(UnauthenticatedError):
    """Unknown email or wrong password; the two are deliberately indistinguishable."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "incorrect email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TwoFactorRequiredError(UnauthenticatedError):
    """Password accepted but the account requires a TOTP code (401)."""
    error_code = "mfa_required"


class InvalidTokenError(UnauthenticatedError):
    """Malformed token, bad signature, or wrong issuer/audience/type (401)."""
    error_code = "invalid_token"


class TokenExpiredError(UnauthenticatedError):
    error_code = "token_expired"


class TokenRevokedError(UnauthenticatedError):
    error_code = "token_revoked"


class TokenStaleError(UnauthenticatedError):
    """Token version claim is behind the principal's current version (401)."""
    error_code = "token_stale"


class PrincipalNotFoundError(UnauthenticatedError):
    error_code = "principal_not_found"


class InsufficientRoleError(ServiceError):
    """Authenticated, but the role may never perform this operation (403)."""
    status_code = 403
    error_code = "forbidden"


class SubscriptionRequiredError(ServiceError):
    """Authenticated, but the operation needs a higher subscription tier (402)."""
    status_code = 402
    error_code = "subscription_required"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate creation or a concurrent write lost an optimistic check (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Too many failed logins; carries the unlock time and a Retry-After hint (429)."""

    status_code = 429
    error_code = "account_locked"

    def __init__(
        self,
        unlock_at: datetime,
        *,
        now: Optional[datetime] = None,
        message: str = "account temporarily locked due to repeated failed logins",
    ) -> None:
        current = now or datetime.now(timezone.utc)
        retry_after = max(1, math.ceil((unlock_at - current).total_seconds()))
        super().__init__(
            message,
            detail={"unlock_at": unlock_at.isoformat(), "retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
        self.unlock_at = unlock_at
        self.retry_after = retry_after


class RateLimitedError(ServiceError):
    """The same request was made again inside its cooldown (429)."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(
            message,
            detail={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


class StoreUnavailableError(ServiceError):
    """Credential or ephemeral store unreachable or timed out (503)."""

    status_code = 503
    error_code = "store_unavailable"
    retryable = True

    def __init__(self, backend: str, message: str = "backing store unavailable") -> None:
        super().__init__(message, detail={"backend": backend})
        self.backend = backend


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "PolicyViolationError",
    "UnauthenticatedError",
    "InvalidCredentialsError",
    "TwoFactorRequiredError",
    "InvalidTokenError",
    "TokenExpiredError",
    "TokenRevokedError",
    "TokenStaleError",
    "PrincipalNotFoundError",
    "InsufficientRoleError",
    "SubscriptionRequiredError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "StoreUnavailableError",
    "ServerError",
]
