from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


@dataclass
class Principal:
    id: str
    email: str
    role: Role = Role.USER
    is_active: bool = True
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass
class PrincipalCredential:
    principal_id: str
    password_hash: str
    password_algo: str
    last_updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class ResetTokenRecord:
    token_hash: str
    principal_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class LoginAttemptCounter:
    identifier: str
    fail_count: int = 0
    locked_until: Optional[float] = None

    def is_locked(self, now: float, max_attempts: int) -> bool:
        return (
            self.fail_count >= max_attempts
            and self.locked_until is not None
            and self.locked_until > now
        )


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()
