"""Tests for the in-memory credential and reset-token store."""

import threading
from datetime import timedelta

import pytest

from galleryauth.storage.errors import ConstraintViolation
from galleryauth.storage.models import Role


def _create(store, email="painter@example.com", role=Role.USER):
    return store.create_principal(email, "hash", "argon2id", role=role)


class TestPrincipals:
    def test_email_is_normalized_and_unique(self, store):
        principal = _create(store, " Painter@Example.COM ")

        assert principal.email == "painter@example.com"
        with pytest.raises(ConstraintViolation):
            _create(store, "PAINTER@example.com")

    def test_lookup_returns_copies(self, store):
        principal = _create(store)
        fetched = store.get_principal(principal.id)
        fetched.role = Role.ADMIN

        assert store.get_principal(principal.id).role == Role.USER

    def test_password_record_is_separate(self, store):
        principal = _create(store)

        assert not hasattr(principal, "password_hash")
        assert store.get_password_record(principal.id) == ("hash", "argon2id")

    def test_count_active_principals(self, store):
        first = _create(store, "a@example.com")
        _create(store, "b@example.com")
        store.set_principal_active(first.id, False)

        assert store.count_active_principals() == 1

    def test_touch_last_login(self, store, clock):
        principal = _create(store)
        store.touch_last_login(principal.id, clock.now())

        assert store.get_principal(principal.id).last_login == clock.now()

    def test_save_password_requires_principal(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")

    def test_concurrent_creates_allow_one_winner(self, store):
        outcomes = []

        def worker():
            try:
                _create(store, "race@example.com")
                outcomes.append("created")
            except ConstraintViolation:
                outcomes.append("conflict")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("created") == 1
        assert outcomes.count("conflict") == 7


class TestResetTokens:
    def test_save_overwrites_previous_token(self, store, clock):
        principal = _create(store)
        expires = clock.now() + timedelta(minutes=15)
        store.save_reset_token(principal.id, "first", expires)
        store.save_reset_token(principal.id, "second", expires)

        assert store.get_reset_token("first") is None
        assert store.get_reset_token("second").principal_id == principal.id

    def test_consume_updates_password_and_deletes_token(self, store, clock):
        principal = _create(store)
        store.save_reset_token(principal.id, "tok", clock.now() + timedelta(minutes=15))

        consumed = store.consume_reset_token("tok", "new-hash", "argon2id", clock.now())

        assert consumed == principal.id
        assert store.get_password_record(principal.id) == ("new-hash", "argon2id")
        assert store.get_reset_token("tok") is None
        assert store.consume_reset_token("tok", "other", "argon2id", clock.now()) is None

    def test_consume_rejects_expired_token(self, store, clock):
        principal = _create(store)
        store.save_reset_token(principal.id, "tok", clock.now() + timedelta(minutes=15))
        clock.advance(minutes=16)

        assert store.consume_reset_token("tok", "new-hash", "argon2id", clock.now()) is None
        assert store.get_password_record(principal.id) == ("hash", "argon2id")

    def test_delete_expired_is_idempotent(self, store, clock):
        live = _create(store, "live@example.com")
        stale = _create(store, "stale@example.com")
        store.save_reset_token(stale.id, "old", clock.now() + timedelta(minutes=1))
        store.save_reset_token(live.id, "new", clock.now() + timedelta(minutes=30))
        clock.advance(minutes=2)

        assert store.delete_expired_reset_tokens(clock.now()) == 1
        assert store.delete_expired_reset_tokens(clock.now()) == 0
        assert store.get_reset_token("new") is not None
