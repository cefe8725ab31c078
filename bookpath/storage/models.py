from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Principal roles; ``chefaodacasa`` is the administrator role."""

    USER = "user"
    CHEFAODACASA = "chefaodacasa"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"


class AuditAction(str, Enum):
    USER_CREATED = "user_created"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    TOKEN_REFRESHED = "token_refreshed"
    PASSWORD_CHANGED = "password_changed"
    ROLE_CHANGED = "role_changed"
    TIER_CHANGED = "tier_changed"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_DISABLED = "two_factor_disabled"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFIED = "email_verified"


@dataclass(frozen=True)
class PasswordHistoryEntry:
    hash: str
    changed_at: datetime


@dataclass
class Principal:
    """Credential record for one user.

    ``failed_login_attempts`` mirrors the ephemeral counter at lock time only;
    the ephemeral store's counter is authoritative.
    """

    id: str
    email: str
    username: str
    password_hash: str
    password_history: List[PasswordHistoryEntry] = field(default_factory=list)
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    token_version: int = 0
    role: Role = Role.USER
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.account_locked_until is None:
            return False
        return (now or utcnow()) < self.account_locked_until

    @classmethod
    def new(
        cls,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        subscription_tier: SubscriptionTier = SubscriptionTier.FREE,
    ) -> "Principal":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            username=username,
            password_hash=password_hash,
            role=Role(role),
            subscription_tier=SubscriptionTier(subscription_tier),
            created_at=now,
            updated_at=now,
        )


@dataclass
class AuditEvent:
    id: str
    action: AuditAction
    user_id: Optional[str]
    created_at: datetime
    metadata: Dict = field(default_factory=dict)
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        action: AuditAction,
        user_id: Optional[str],
        *,
        metadata: Optional[Dict] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "AuditEvent":
        return cls(
            id=str(uuid.uuid4()),
            action=AuditAction(action),
            user_id=user_id,
            created_at=created_at or utcnow(),
            metadata=dict(metadata or {}),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
