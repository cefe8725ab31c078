from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from bookpath.logging import get_logger
from bookpath.service.errors import ConflictError, NotFoundError
from bookpath.storage.errors import ConstraintViolation
from bookpath.storage.models import (
    AuditEvent,
    PasswordHistoryEntry,
    Principal,
    Role,
    SubscriptionTier,
    utcnow,
)


class MemoryStore:
    """In-process credential store used by tests and local development.

    Every method takes the data lock for its whole read-modify-write, which
    gives the same per-call atomicity the Postgres store gets from single
    statements. Callers always receive copies, never the stored records.
    """

    def __init__(self, *, encryption_key: bytes) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self._email_index: Dict[str, str] = {}
        self._username_index: Dict[str, str] = {}
        self.audit_events: List[AuditEvent] = []
        self._data_lock = threading.RLock()
        self._mfa_cipher = Fernet(encryption_key)

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if secret is None:
            return None
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, token: Optional[str]) -> Optional[str]:
        if token is None:
            return None
        try:
            return self._mfa_cipher.decrypt(token.encode()).decode()
        except InvalidToken:
            self.logger.error("mfa_secret_decrypt_failed")
            return None

    def _snapshot(self, principal: Principal) -> Principal:
        return replace(
            principal,
            password_history=list(principal.password_history),
            two_factor_secret=self._decrypt_secret(principal.two_factor_secret),
        )

    def _require(self, principal_id: str) -> Principal:
        principal = self.principals.get(principal_id)
        if not principal:
            raise NotFoundError("user not found", detail={"user_id": principal_id})
        return principal

    async def create_principal(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        subscription_tier: SubscriptionTier = SubscriptionTier.FREE,
    ) -> Principal:
        principal = Principal.new(
            email, username, password_hash, role=role, subscription_tier=subscription_tier
        )
        with self._data_lock:
            if principal.email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username.lower() in self._username_index:
                raise ConstraintViolation("username already exists", {"field": "username"})
            self.principals[principal.id] = principal
            self._email_index[principal.email] = principal.id
            self._username_index[username.lower()] = principal.id
            return self._snapshot(principal)

    async def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return self._snapshot(principal) if principal else None

    async def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._email_index.get(email.strip().lower())
            if not principal_id:
                return None
            return self._snapshot(self.principals[principal_id])

    async def list_principals(self, limit: int = 100) -> List[Principal]:
        with self._data_lock:
            ordered = sorted(self.principals.values(), key=lambda p: p.created_at)
            return [self._snapshot(p) for p in ordered[:limit]]

    async def apply_password_change(
        self,
        principal_id: str,
        *,
        expected_token_version: int,
        password_hash: str,
        password_history: List[PasswordHistoryEntry],
        token_version: int,
    ) -> Principal:
        with self._data_lock:
            principal = self._require(principal_id)
            if principal.token_version != expected_token_version:
                raise ConflictError(
                    "credentials changed concurrently; retry the request",
                    detail={"user_id": principal_id},
                )
            if token_version <= principal.token_version:
                raise ConflictError("token version must increase", detail={"user_id": principal_id})
            principal.password_hash = password_hash
            principal.password_history = list(password_history)
            principal.token_version = token_version
            principal.updated_at = utcnow()
            return self._snapshot(principal)

    async def bump_token_version(self, principal_id: str) -> int:
        with self._data_lock:
            principal = self._require(principal_id)
            principal.token_version += 1
            principal.updated_at = utcnow()
            return principal.token_version

    async def lock_principal(
        self, principal_id: str, locked_until: datetime, attempts: int
    ) -> None:
        with self._data_lock:
            principal = self._require(principal_id)
            principal.account_locked_until = locked_until
            principal.failed_login_attempts = attempts
            principal.updated_at = utcnow()

    async def clear_lock(self, principal_id: str) -> None:
        with self._data_lock:
            principal = self._require(principal_id)
            principal.account_locked_until = None
            principal.failed_login_attempts = 0

    async def update_role(self, principal_id: str, role: Role) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.role = Role(role)
            # Outstanding tokens carry the old role claim
            principal.token_version += 1
            principal.updated_at = utcnow()
            return self._snapshot(principal)

    async def update_subscription_tier(
        self, principal_id: str, tier: SubscriptionTier
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.subscription_tier = SubscriptionTier(tier)
            principal.updated_at = utcnow()
            return self._snapshot(principal)

    async def set_two_factor(
        self, principal_id: str, *, secret: Optional[str], enabled: bool
    ) -> None:
        with self._data_lock:
            principal = self._require(principal_id)
            principal.two_factor_secret = self._encrypt_secret(secret)
            principal.two_factor_enabled = enabled
            principal.updated_at = utcnow()

    async def mark_email_verified(self, principal_id: str) -> None:
        with self._data_lock:
            principal = self._require(principal_id)
            principal.email_verified = True
            principal.updated_at = utcnow()

    async def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)

    async def list_audit_events(
        self, principal_id: str, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [e for e in self.audit_events if e.user_id == principal_id]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events[:limit]

    async def close(self) -> None:
        return None
