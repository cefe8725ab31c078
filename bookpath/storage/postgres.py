from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import psycopg
from cryptography.fernet import Fernet, InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from bookpath.logging import get_logger
from bookpath.service.errors import ConflictError, NotFoundError, StoreUnavailableError
from bookpath.storage.errors import ConstraintViolation
from bookpath.storage.models import (
    AuditAction,
    AuditEvent,
    PasswordHistoryEntry,
    Principal,
    Role,
    SubscriptionTier,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        password_history JSONB NOT NULL DEFAULT '[]'::jsonb,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        account_locked_until TIMESTAMPTZ,
        token_version INTEGER NOT NULL DEFAULT 0 CHECK (token_version >= 0),
        role TEXT NOT NULL DEFAULT 'user',
        subscription_tier TEXT NOT NULL DEFAULT 'free',
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_secret TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        user_id UUID,
        action TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        ip_addr TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_user_created ON audit_log (user_id, created_at DESC)",
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed credential store on a shared async connection pool.

    Each public method runs in its own short transaction. Connection failures
    and pool/statement timeouts surface as :class:`StoreUnavailableError`.
    """

    def __init__(
        self,
        dsn: str,
        *,
        encryption_key: bytes,
        timeout_seconds: float = 5.0,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        self._mfa_cipher = Fernet(encryption_key)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            open=False,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )

    async def open(self) -> None:
        try:
            await self.pool.open(wait=True, timeout=self.timeout_seconds)
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error("postgres_pool_open_failed", error=str(exc))
            raise StoreUnavailableError("postgres") from exc
        await self._ensure_schema()

    async def close(self) -> None:
        await self.pool.close()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[psycopg.AsyncConnection]:
        try:
            async with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            field = "username" if "username" in (exc.diag.constraint_name or "") else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        except errors.QueryCanceled as exc:
            self.logger.warning("postgres_statement_timeout", error=str(exc))
            raise StoreUnavailableError("postgres", "statement timed out") from exc
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.warning("postgres_unavailable", error=str(exc))
            raise StoreUnavailableError("postgres") from exc

    async def _ensure_schema(self) -> None:
        async with self._connect() as conn:
            for statement in _SCHEMA:
                await conn.execute(statement)

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

    @staticmethod
    def _history_to_json(history: List[PasswordHistoryEntry]) -> Jsonb:
        return Jsonb(
            [{"hash": e.hash, "changed_at": e.changed_at.isoformat()} for e in history]
        )

    @staticmethod
    def _history_from_json(raw: Any) -> List[PasswordHistoryEntry]:
        if isinstance(raw, str):
            raw = json.loads(raw)
        return [
            PasswordHistoryEntry(
                hash=item["hash"], changed_at=datetime.fromisoformat(item["changed_at"])
            )
            for item in raw or []
        ]

    def _row_to_principal(self, row: Dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            password_history=self._history_from_json(row.get("password_history")),
            failed_login_attempts=row.get("failed_login_attempts", 0),
            account_locked_until=row.get("account_locked_until"),
            token_version=row.get("token_version", 0),
            role=Role(row.get("role", "user")),
            subscription_tier=SubscriptionTier(row.get("subscription_tier", "free")),
            two_factor_enabled=row.get("two_factor_enabled", False),
            two_factor_secret=self._decrypt_secret(row.get("two_factor_secret")),
            email_verified=row.get("email_verified", False),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

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
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                INSERT INTO app_user (id, email, username, password_hash, role, subscription_tier,
                                      created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    principal.id,
                    principal.email,
                    principal.username,
                    principal.password_hash,
                    principal.role.value,
                    principal.subscription_tier.value,
                    principal.created_at,
                    principal.updated_at,
                ),
            )
            row = await cur.fetchone()
        return self._row_to_principal(row)

    async def get_principal(self, principal_id: str) -> Optional[Principal]:
        if not _is_uuid(principal_id):
            return None
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM app_user WHERE id = %s", (principal_id,))
            row = await cur.fetchone()
        return self._row_to_principal(row) if row else None

    async def get_principal_by_email(self, email: str) -> Optional[Principal]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            )
            row = await cur.fetchone()
        return self._row_to_principal(row) if row else None

    async def list_principals(self, limit: int = 100) -> List[Principal]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM app_user ORDER BY created_at ASC LIMIT %s", (limit,)
            )
            rows = await cur.fetchall()
        return [self._row_to_principal(row) for row in rows]

    async def apply_password_change(
        self,
        principal_id: str,
        *,
        expected_token_version: int,
        password_hash: str,
        password_history: List[PasswordHistoryEntry],
        token_version: int,
    ) -> Principal:
        if token_version <= expected_token_version:
            raise ConflictError("token version must increase", detail={"user_id": principal_id})
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE app_user
                   SET password_hash = %s, password_history = %s, token_version = %s,
                       updated_at = now()
                 WHERE id = %s AND token_version = %s
                RETURNING *
                """,
                (
                    password_hash,
                    self._history_to_json(password_history),
                    token_version,
                    principal_id,
                    expected_token_version,
                ),
            )
            row = await cur.fetchone()
            if row is None:
                exists = await (
                    await conn.execute("SELECT 1 FROM app_user WHERE id = %s", (principal_id,))
                ).fetchone()
        if row is None:
            if not exists:
                raise NotFoundError("user not found", detail={"user_id": principal_id})
            raise ConflictError(
                "credentials changed concurrently; retry the request",
                detail={"user_id": principal_id},
            )
        return self._row_to_principal(row)

    async def bump_token_version(self, principal_id: str) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE app_user SET token_version = token_version + 1, updated_at = now()
                 WHERE id = %s
                RETURNING token_version
                """,
                (principal_id,),
            )
            row = await cur.fetchone()
        if not row:
            raise NotFoundError("user not found", detail={"user_id": principal_id})
        return int(row["token_version"])

    async def lock_principal(
        self, principal_id: str, locked_until: datetime, attempts: int
    ) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                UPDATE app_user
                   SET account_locked_until = %s, failed_login_attempts = %s, updated_at = now()
                 WHERE id = %s
                """,
                (locked_until, attempts, principal_id),
            )

    async def clear_lock(self, principal_id: str) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                UPDATE app_user SET account_locked_until = NULL, failed_login_attempts = 0
                 WHERE id = %s
                """,
                (principal_id,),
            )

    async def update_role(self, principal_id: str, role: Role) -> Optional[Principal]:
        if not _is_uuid(principal_id):
            return None
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE app_user
                   SET role = %s, token_version = token_version + 1, updated_at = now()
                 WHERE id = %s
                RETURNING *
                """,
                (Role(role).value, principal_id),
            )
            row = await cur.fetchone()
        return self._row_to_principal(row) if row else None

    async def update_subscription_tier(
        self, principal_id: str, tier: SubscriptionTier
    ) -> Optional[Principal]:
        if not _is_uuid(principal_id):
            return None
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE app_user SET subscription_tier = %s, updated_at = now()
                 WHERE id = %s
                RETURNING *
                """,
                (SubscriptionTier(tier).value, principal_id),
            )
            row = await cur.fetchone()
        return self._row_to_principal(row) if row else None

    async def set_two_factor(
        self, principal_id: str, *, secret: Optional[str], enabled: bool
    ) -> None:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE app_user
                   SET two_factor_secret = %s, two_factor_enabled = %s, updated_at = now()
                 WHERE id = %s
                """,
                (self._encrypt_secret(secret), enabled, principal_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError("user not found", detail={"user_id": principal_id})

    async def mark_email_verified(self, principal_id: str) -> None:
        if not _is_uuid(principal_id):
            raise NotFoundError("user not found", detail={"user_id": principal_id})
        async with self._connect() as conn:
            cur = await conn.execute(
                "UPDATE app_user SET email_verified = TRUE, updated_at = now() WHERE id = %s",
                (principal_id,),
            )
            if cur.rowcount == 0:
                raise NotFoundError("user not found", detail={"user_id": principal_id})

    async def record_audit_event(self, event: AuditEvent) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO audit_log (id, user_id, action, metadata, ip_addr, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.user_id,
                    event.action.value,
                    Jsonb(event.metadata),
                    event.ip_addr,
                    event.user_agent,
                    event.created_at,
                ),
            )

    async def list_audit_events(
        self, principal_id: str, limit: int = 100
    ) -> List[AuditEvent]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT * FROM audit_log WHERE user_id = %s
                 ORDER BY created_at DESC LIMIT %s
                """,
                (principal_id, limit),
            )
            rows = await cur.fetchall()
        return [
            AuditEvent(
                id=str(row["id"]),
                action=AuditAction(row["action"]),
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                created_at=row["created_at"],
                metadata=row.get("metadata") or {},
                ip_addr=row.get("ip_addr"),
                user_agent=row.get("user_agent"),
            )
            for row in rows
        ]
