from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional

from galleryauth.logging import get_logger
from galleryauth.storage.errors import ConstraintViolation
from galleryauth.storage.models import (
    Principal,
    PrincipalCredential,
    ResetTokenRecord,
    Role,
    normalize_email,
)


class MemoryStore:
    """In-memory credential and reset-token store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, PrincipalCredential] = {}
        # principal_id -> record; at most one live reset token per principal
        self.reset_tokens: Dict[str, ResetTokenRecord] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # principals
    def create_principal(
        self,
        email: str,
        password_hash: str,
        password_algo: str,
        *,
        role: Role = Role.USER,
        is_active: bool = True,
    ) -> Principal:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.principals.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=str(uuid.uuid4()),
                email=email,
                role=Role(role),
                is_active=is_active,
            )
            self.principals[principal.id] = principal
            self.credentials[principal.id] = PrincipalCredential(
                principal_id=principal.id,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            return replace(principal)

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        email = normalize_email(email)
        with self._data_lock:
            found = next((p for p in self.principals.values() if p.email == email), None)
            return replace(found) if found else None

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            found = self.principals.get(principal_id)
            return replace(found) if found else None

    def touch_last_login(
        self, principal_id: str, when: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return
            principal.last_login = when or datetime.now(timezone.utc)

    def count_active_principals(self) -> int:
        with self._data_lock:
            return sum(1 for p in self.principals.values() if p.is_active)

    def set_principal_active(self, principal_id: str, is_active: bool) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.is_active = is_active
            return replace(principal)

    def set_principal_role(self, principal_id: str, role: Role) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.role = Role(role)
            return replace(principal)

    # credentials
    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found for credentials", {"principal_id": principal_id}
                )
            self.credentials[principal_id] = PrincipalCredential(
                principal_id=principal_id,
                password_hash=password_hash,
                password_algo=password_algo,
            )

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(principal_id)
            if not cred:
                return None
            return cred.password_hash, cred.password_algo

    # password reset tokens
    def save_reset_token(
        self, principal_id: str, token_hash: str, expires_at: datetime
    ) -> ResetTokenRecord:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found for reset token", {"principal_id": principal_id}
                )
            record = ResetTokenRecord(
                token_hash=token_hash,
                principal_id=principal_id,
                expires_at=expires_at,
            )
            # Upsert: a new token replaces the previous one
            self.reset_tokens[principal_id] = record
            return replace(record)

    def get_reset_token(self, token_hash: str) -> Optional[ResetTokenRecord]:
        with self._data_lock:
            found = next(
                (r for r in self.reset_tokens.values() if r.token_hash == token_hash),
                None,
            )
            return replace(found) if found else None

    def consume_reset_token(
        self,
        token_hash: str,
        password_hash: str,
        password_algo: str,
        now: datetime,
    ) -> Optional[str]:
        """Delete an unexpired reset token and store the new password together.

        Returns the principal id, or ``None`` when the token is gone or expired.
        """
        with self._data_lock:
            record = next(
                (r for r in self.reset_tokens.values() if r.token_hash == token_hash),
                None,
            )
            if not record or record.is_expired(now):
                return None
            del self.reset_tokens[record.principal_id]
            self.save_password(record.principal_id, password_hash, password_algo)
            return record.principal_id

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [pid for pid, r in self.reset_tokens.items() if r.is_expired(now)]
            for pid in expired:
                del self.reset_tokens[pid]
            return len(expired)
