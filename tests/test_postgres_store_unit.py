import contextlib
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import psycopg
import pytest
from psycopg import errors

from galleryauth.logging import get_logger
from galleryauth.storage.errors import ConstraintViolation, StoreUnavailable
from galleryauth.storage.models import Role
from galleryauth.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeConnection:
    """Records statements and replays canned ``fetchone`` rows in order."""

    def __init__(self, rows=(), *, error=None):
        self.rows = list(rows)
        self.error = error
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        cursor = MagicMock()
        cursor.fetchone.return_value = self.rows.pop(0) if self.rows else None
        cursor.rowcount = 2
        return cursor

    def transaction(self):
        return contextlib.nullcontext()


class FakePool:
    def __init__(self, conn=None, *, error=None):
        self.conn = conn
        self.error = error

    @contextlib.contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


def create_test_store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.logger = get_logger(__name__)
    store.pool = pool
    return store


def principal_row(**overrides):
    row = {
        "id": "7d2b8f0e-0000-4000-8000-000000000001",
        "email": "admin@example.com",
        "role": "ADMIN",
        "is_active": True,
        "last_login": None,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def test_row_mapping_needs_no_database():
    store = create_test_store(DummyPool())

    principal = store._principal_from_row(principal_row())

    assert principal.role == Role.ADMIN
    assert principal.is_admin


def test_lookup_normalizes_email():
    conn = FakeConnection([principal_row()])
    store = create_test_store(FakePool(conn))

    principal = store.get_principal_by_email(" Admin@Example.com ")

    assert principal.email == "admin@example.com"
    assert conn.executed[0][1] == ("admin@example.com",)


def test_create_duplicate_email_raises_constraint_violation():
    conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))
    store = create_test_store(FakePool(conn))

    with pytest.raises(ConstraintViolation):
        store.create_principal("a@example.com", "hash", "argon2id")


def test_operational_error_surfaces_as_store_unavailable():
    store = create_test_store(FakePool(error=psycopg.OperationalError("connection refused")))

    with pytest.raises(StoreUnavailable) as exc:
        store.get_principal("anything")
    assert exc.value.backend == "postgres"


def test_consume_reset_token_writes_password_in_same_transaction():
    conn = FakeConnection([{"principal_id": "p-1"}])
    store = create_test_store(FakePool(conn))

    consumed = store.consume_reset_token("digest", "new-hash", "argon2id", NOW)

    assert consumed == "p-1"
    assert conn.executed[0][0].startswith("DELETE FROM password_reset_token")
    assert conn.executed[0][1] == ("digest", NOW)
    assert "INSERT INTO principal_credential" in conn.executed[1][0]
    assert conn.executed[1][1] == ("p-1", "new-hash", "argon2id")


def test_consume_lost_race_leaves_password_alone():
    conn = FakeConnection([])
    store = create_test_store(FakePool(conn))

    assert store.consume_reset_token("digest", "new-hash", "argon2id", NOW) is None
    assert len(conn.executed) == 1


def test_save_reset_token_upserts_by_principal():
    expires = NOW + timedelta(minutes=15)
    conn = FakeConnection(
        [{"principal_id": "p-1", "token_hash": "digest", "expires_at": expires, "created_at": NOW}]
    )
    store = create_test_store(FakePool(conn))

    record = store.save_reset_token("p-1", "digest", expires)

    assert "ON CONFLICT (principal_id) DO UPDATE" in conn.executed[0][0]
    assert record.expires_at == expires


def test_delete_expired_returns_rowcount():
    conn = FakeConnection()
    store = create_test_store(FakePool(conn))

    assert store.delete_expired_reset_tokens(NOW) == 2
    assert conn.executed[0][1] == (NOW,)
