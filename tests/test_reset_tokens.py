"""Tests for password reset token issuance, consumption and sweeping."""

import asyncio
import hashlib
from unittest.mock import MagicMock

import pytest

from galleryauth.service.errors import (
    RateLimited,
    ResetTokenInvalid,
    TokenRevoked,
    WeakPassword,
)
from galleryauth.service.reset_tokens import ResetTokenManager, ResetTokenSweeper
from galleryauth.service.tokens import TokenType

STRONG_PASSWORD = "Gallery@2024x"
NEW_PASSWORD = "Canvas!Oil77"


@pytest.fixture
def manager(settings, store, counters, token_service, hasher, clock):
    return ResetTokenManager(
        settings, store, counters, token_service, hasher=hasher, clock=clock.now
    )


@pytest.fixture
def principal(store, hasher):
    password_hash, algo = hasher.hash(STRONG_PASSWORD)
    return store.create_principal("curator@example.com", password_hash, algo)


class TestInitiate:
    async def test_unknown_email_is_generic(self, manager):
        initiation = await manager.initiate("nobody@example.com")

        assert initiation.issued is False
        assert initiation.principal is None

    async def test_inactive_account_is_generic(self, manager, store, principal):
        store.set_principal_active(principal.id, False)

        initiation = await manager.initiate(principal.email)

        assert initiation.issued is False

    async def test_only_the_hash_is_stored(self, manager, store, principal):
        initiation = await manager.initiate("Curator@Example.com")

        assert len(initiation.raw_token) == 64
        digest = hashlib.sha256(initiation.raw_token.encode()).hexdigest()
        record = store.get_reset_token(digest)
        assert record.principal_id == principal.id
        assert store.get_reset_token(initiation.raw_token) is None

    async def test_expiry_is_fifteen_minutes(self, manager, principal, clock):
        initiation = await manager.initiate(principal.email)

        assert (initiation.expires_at - clock.now()).total_seconds() == 15 * 60

    async def test_sixth_request_in_an_hour_is_rate_limited(self, manager, principal, clock):
        for _ in range(5):
            await manager.initiate(principal.email)
            clock.advance(minutes=1)

        with pytest.raises(RateLimited) as exc:
            await manager.initiate(principal.email)
        # Window opened at the first request, five minutes ago
        assert exc.value.retry_after == 55 * 60
        assert exc.value.status_code == 429

    async def test_rate_limit_window_resets(self, manager, principal, clock):
        for _ in range(5):
            await manager.initiate(principal.email)
        with pytest.raises(RateLimited):
            await manager.initiate(principal.email)

        clock.advance(hours=1, seconds=1)

        assert (await manager.initiate(principal.email)).issued


class TestComplete:
    async def test_token_is_single_use(self, manager, principal):
        token = (await manager.initiate(principal.email)).raw_token

        await manager.complete(token, NEW_PASSWORD)

        with pytest.raises(ResetTokenInvalid):
            await manager.complete(token, NEW_PASSWORD)

    async def test_password_is_replaced(self, manager, store, hasher, principal):
        token = (await manager.initiate(principal.email)).raw_token

        await manager.complete(token, NEW_PASSWORD)

        record = store.get_password_record(principal.id)
        assert hasher.verify(record, NEW_PASSWORD)
        assert not hasher.verify(record, STRONG_PASSWORD)

    async def test_expired_token(self, manager, principal, clock):
        token = (await manager.initiate(principal.email)).raw_token
        clock.advance(minutes=16)

        with pytest.raises(ResetTokenInvalid):
            await manager.complete(token, NEW_PASSWORD)

    async def test_new_request_supersedes_old_token(self, manager, principal):
        first = (await manager.initiate(principal.email)).raw_token
        second = (await manager.initiate(principal.email)).raw_token

        with pytest.raises(ResetTokenInvalid):
            await manager.complete(first, NEW_PASSWORD)
        await manager.complete(second, NEW_PASSWORD)

    async def test_weak_password_keeps_token_usable(self, manager, principal):
        token = (await manager.initiate(principal.email)).raw_token

        with pytest.raises(WeakPassword) as exc:
            await manager.complete(token, "password123")
        assert exc.value.violations

        await manager.complete(token, NEW_PASSWORD)

    async def test_unknown_and_empty_tokens(self, manager):
        with pytest.raises(ResetTokenInvalid):
            await manager.complete("0" * 64, NEW_PASSWORD)
        with pytest.raises(ResetTokenInvalid):
            await manager.complete("", NEW_PASSWORD)

    async def test_deactivated_principal_cannot_reset(self, manager, store, principal):
        token = (await manager.initiate(principal.email)).raw_token
        store.set_principal_active(principal.id, False)

        with pytest.raises(ResetTokenInvalid):
            await manager.complete(token, NEW_PASSWORD)

    async def test_lost_consumption_race(self, manager, store, principal):
        token = (await manager.initiate(principal.email)).raw_token
        store.consume_reset_token = MagicMock(return_value=None)

        with pytest.raises(ResetTokenInvalid):
            await manager.complete(token, NEW_PASSWORD)

    async def test_completion_revokes_existing_tokens(
        self, manager, token_service, principal, clock
    ):
        pair = token_service.issue(principal)
        token = (await manager.initiate(principal.email)).raw_token
        clock.advance(seconds=1)

        await manager.complete(token, NEW_PASSWORD)

        with pytest.raises(TokenRevoked):
            await token_service.verify(pair.access_token, TokenType.ACCESS)
        with pytest.raises(TokenRevoked):
            await token_service.verify(pair.refresh_token, TokenType.REFRESH)


class TestSweep:
    async def test_sweep_removes_only_expired(self, manager, store, hasher, principal, clock):
        other = store.create_principal("framer@example.com", *hasher.hash(STRONG_PASSWORD))
        await manager.initiate(principal.email)
        clock.advance(minutes=10)
        fresh = (await manager.initiate(other.email)).raw_token
        clock.advance(minutes=6)

        assert manager.sweep_expired() == 1
        assert manager.sweep_expired() == 0
        await manager.complete(fresh, NEW_PASSWORD)

    async def test_sweeper_runs_until_stopped(self):
        manager = MagicMock()
        manager.sweep_expired.return_value = 0
        sweeper = ResetTokenSweeper(manager, interval=0)

        await sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert manager.sweep_expired.call_count >= 1
        assert sweeper.running is False

    async def test_sweeper_survives_errors(self):
        calls = []

        def sweep():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("db down")
            return 0

        manager = MagicMock()
        manager.sweep_expired.side_effect = sweep
        sweeper = ResetTokenSweeper(manager, interval=0)

        await sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert manager.sweep_expired.call_count >= 2
