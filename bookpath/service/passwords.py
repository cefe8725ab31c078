from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from bookpath.config import PasswordPolicyConfig
from bookpath.logging import get_logger
from bookpath.service.errors import PolicyViolationError
from bookpath.storage.models import AuditAction, PasswordHistoryEntry, Principal

logger = get_logger(__name__)

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[^A-Za-z0-9]")

MAX_PASSWORD_LENGTH = 128


class PasswordPolicy:
    """Hashing, complexity and reuse rules for principal passwords."""

    def __init__(self, config: Optional[PasswordPolicyConfig] = None) -> None:
        self.config = config or PasswordPolicyConfig()
        self._hasher = PasswordHasher(
            time_cost=self.config.time_cost,
            memory_cost=self.config.memory_cost,
            parallelism=self.config.parallelism,
            type=Type.ID,
        )

    @property
    def history_size(self) -> int:
        return self.config.history_size

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def complexity_violations(self, plaintext: str) -> List[str]:
        violations: List[str] = []
        if len(plaintext) < self.config.min_length:
            violations.append(f"must be at least {self.config.min_length} characters")
        if len(plaintext) > MAX_PASSWORD_LENGTH:
            violations.append(f"must be at most {MAX_PASSWORD_LENGTH} characters")
        if not _LOWER.search(plaintext):
            violations.append("must contain a lowercase letter")
        if not _UPPER.search(plaintext):
            violations.append("must contain an uppercase letter")
        if not _DIGIT.search(plaintext):
            violations.append("must contain a digit")
        if not _SPECIAL.search(plaintext):
            violations.append("must contain a special character")
        return violations

    def validate_complexity(self, plaintext: str) -> None:
        violations = self.complexity_violations(plaintext)
        if violations:
            raise PolicyViolationError(
                "password " + "; ".join(violations),
                detail={"reason": "complexity", "violations": violations},
            )

    def is_reused(
        self,
        plaintext: str,
        history: Sequence[Union[PasswordHistoryEntry, str]],
    ) -> bool:
        """True if ``plaintext`` matches any of the newest ``history_size`` hashes."""
        recent = list(history)[-self.history_size:]
        for entry in recent:
            digest = entry.hash if isinstance(entry, PasswordHistoryEntry) else entry
            if self.verify(plaintext, digest):
                return True
        return False


@dataclass(frozen=True)
class PersistPasswordChange:
    """Write hash, history and version together, guarded by the prior version."""

    principal_id: str
    expected_token_version: int
    password_hash: str
    password_history: List[PasswordHistoryEntry]
    token_version: int


@dataclass(frozen=True)
class AuditRecord:
    action: AuditAction
    principal_id: str
    metadata: dict = field(default_factory=dict)


Effect = Union[PersistPasswordChange, AuditRecord]


@dataclass(frozen=True)
class PasswordChange:
    principal: Principal
    effects: List[Effect]


def push_history(
    history: Iterable[PasswordHistoryEntry],
    entry: PasswordHistoryEntry,
    history_size: int,
) -> List[PasswordHistoryEntry]:
    """Append ``entry`` and evict the oldest entries beyond ``history_size``."""
    updated = list(history) + [entry]
    return updated[-history_size:]


def plan_password_change(
    principal: Principal,
    new_hash: str,
    *,
    history_size: int,
    now: datetime,
    action: AuditAction = AuditAction.PASSWORD_CHANGED,
) -> PasswordChange:
    """Compute the post-change snapshot and the side effects that realise it.

    Pure: nothing is written here. The outgoing hash moves onto the bounded
    history, the token version advances by exactly one, and the new hash
    replaces the old.
    """
    history = push_history(
        principal.password_history,
        PasswordHistoryEntry(hash=principal.password_hash, changed_at=now),
        history_size,
    )
    updated = replace(
        principal,
        password_hash=new_hash,
        password_history=history,
        token_version=principal.token_version + 1,
        updated_at=now,
    )
    effects: List[Effect] = [
        PersistPasswordChange(
            principal_id=principal.id,
            expected_token_version=principal.token_version,
            password_hash=new_hash,
            password_history=history,
            token_version=updated.token_version,
        ),
        AuditRecord(
            action=action,
            principal_id=principal.id,
            metadata={"token_version": updated.token_version},
        ),
    ]
    return PasswordChange(principal=updated, effects=effects)
