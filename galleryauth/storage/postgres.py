from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from galleryauth.logging import get_logger
from galleryauth.storage.errors import ConstraintViolation, StoreUnavailable
from galleryauth.storage.models import (
    Principal,
    ResetTokenRecord,
    Role,
    normalize_email,
)


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'USER' CHECK (role IN ('USER', 'ADMIN')),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_credential (
        principal_id UUID PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        principal_id UUID PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_reset_token_expires_idx ON password_reset_token (expires_at)",
)


class PostgresStore:
    """Postgres-backed principal, credential and reset-token storage."""

    def __init__(self, dsn: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout)),
            },
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(
                "credential store unavailable", backend="postgres"
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _principal_from_row(row: Dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            role=Role(row.get("role", Role.USER.value)),
            is_active=row.get("is_active", True),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    @staticmethod
    def _reset_token_from_row(row: Dict[str, Any]) -> ResetTokenRecord:
        return ResetTokenRecord(
            token_hash=row["token_hash"],
            principal_id=str(row["principal_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

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
        principal_id = str(uuid.uuid4())
        email = normalize_email(email)
        role = Role(role)
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO principal (id, email, role, is_active)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (principal_id, email, role.value, is_active),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO principal_credential (principal_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (principal_id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._principal_from_row(row)

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        if not row:
            return None
        return self._principal_from_row(row)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        if not row:
            return None
        return self._principal_from_row(row)

    def touch_last_login(
        self, principal_id: str, when: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE principal SET last_login = %s WHERE id = %s",
                (when or datetime.now(timezone.utc), principal_id),
            )

    def count_active_principals(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM principal WHERE is_active"
            ).fetchone()
        return int(row["total"]) if row else 0

    def set_principal_active(self, principal_id: str, is_active: bool) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, principal_id),
            ).fetchone()
        if not row:
            return None
        return self._principal_from_row(row)

    def set_principal_role(self, principal_id: str, role: Role) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET role = %s WHERE id = %s RETURNING *",
                (Role(role).value, principal_id),
            ).fetchone()
        if not row:
            return None
        return self._principal_from_row(row)

    # credentials
    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                self._upsert_password(conn, principal_id, password_hash, password_algo)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal not found for credentials", {"principal_id": principal_id}
            )

    @staticmethod
    def _upsert_password(
        conn: psycopg.Connection, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        conn.execute(
            """
            INSERT INTO principal_credential (principal_id, password_hash, password_algo, last_updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (principal_id) DO UPDATE
            SET password_hash = EXCLUDED.password_hash,
                password_algo = EXCLUDED.password_algo,
                last_updated_at = now()
            """,
            (principal_id, password_hash, password_algo),
        )

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM principal_credential WHERE principal_id = %s",
                (principal_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # password reset tokens
    def save_reset_token(
        self, principal_id: str, token_hash: str, expires_at: datetime
    ) -> ResetTokenRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO password_reset_token (principal_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (principal_id) DO UPDATE
                    SET token_hash = EXCLUDED.token_hash,
                        expires_at = EXCLUDED.expires_at,
                        created_at = EXCLUDED.created_at
                    RETURNING *
                    """,
                    (principal_id, token_hash, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal not found for reset token", {"principal_id": principal_id}
            )
        return self._reset_token_from_row(row)

    def get_reset_token(self, token_hash: str) -> Optional[ResetTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return self._reset_token_from_row(row)

    def consume_reset_token(
        self,
        token_hash: str,
        password_hash: str,
        password_algo: str,
        now: datetime,
    ) -> Optional[str]:
        """Delete an unexpired reset token and store the new password in one transaction.

        Returns the principal id, or ``None`` when another request consumed the
        token first or it has expired.
        """
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                DELETE FROM password_reset_token
                WHERE token_hash = %s AND expires_at > %s
                RETURNING principal_id
                """,
                (token_hash, now),
            ).fetchone()
            if not row:
                return None
            principal_id = str(row["principal_id"])
            self._upsert_password(conn, principal_id, password_hash, password_algo)
        return principal_id

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM password_reset_token WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount or 0
