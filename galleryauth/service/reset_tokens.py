"""Single-use password reset tokens.

Only the SHA-256 of a token is stored. A principal holds at most one live
token; issuing a new one overwrites the previous row, so an older link stops
matching immediately. Expiry is re-checked on every lookup, which makes the
periodic sweep a garbage-collection step rather than a correctness one.
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from galleryauth.config import Settings
from galleryauth.logging import get_logger
from galleryauth.service.errors import RateLimited, ResetTokenInvalid, WeakPassword
from galleryauth.service.hashing import PasswordHasher
from galleryauth.service.password_policy import PasswordPolicy
from galleryauth.service.tokens import TokenService
from galleryauth.storage.counters import RESET_ATTEMPTS_PREFIX, SharedCounterStore
from galleryauth.storage.models import Principal, ResetTokenRecord
from galleryauth.storage.retry import retry_read

logger = get_logger(__name__)

RESET_WINDOW_SECONDS = 60 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60
MAX_SWEEP_BACKOFF_SECONDS = 60 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_reset_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()


class ResetTokenStore(Protocol):
    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def save_reset_token(
        self, principal_id: str, token_hash: str, expires_at: datetime
    ) -> ResetTokenRecord: ...

    def get_reset_token(self, token_hash: str) -> Optional[ResetTokenRecord]: ...

    def consume_reset_token(
        self, token_hash: str, password_hash: str, password_algo: str, now: datetime
    ) -> Optional[str]: ...

    def delete_expired_reset_tokens(self, now: datetime) -> int: ...


@dataclass(frozen=True)
class ResetInitiation:
    """Outcome of a reset request; ``raw_token`` is ``None`` for unknown accounts."""

    principal: Optional[Principal] = None
    raw_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def issued(self) -> bool:
        return self.raw_token is not None


class ResetTokenManager:
    def __init__(
        self,
        settings: Settings,
        store: ResetTokenStore,
        counters: SharedCounterStore,
        tokens: TokenService,
        *,
        policy: Optional[PasswordPolicy] = None,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.counters = counters
        self.tokens = tokens
        self.policy = policy or PasswordPolicy()
        self.hasher = hasher or PasswordHasher()
        self._clock = clock
        self.token_ttl = timedelta(minutes=settings.reset_token_ttl_minutes)
        self.max_per_hour = settings.reset_max_per_hour

    async def _read(self, operation: str, fn):
        return await retry_read(
            operation,
            fn,
            retries=self.settings.store_read_retries,
            base_delay=self.settings.store_retry_base_delay_seconds,
        )

    async def initiate(self, email: str) -> ResetInitiation:
        principal = await self._read(
            "get_principal_by_email", lambda: self.store.get_principal_by_email(email)
        )
        if not principal or not principal.is_active:
            logger.info("password_reset_unknown_account")
            return ResetInitiation()

        # Count first: the increment is the atomic gate, the window opens on the first request
        key = f"{RESET_ATTEMPTS_PREFIX}{principal.id}"
        attempts = await self.counters.atomic_increment(key, RESET_WINDOW_SECONDS)
        if attempts > self.max_per_hour:
            retry_after = await self.counters.ttl(key) or RESET_WINDOW_SECONDS
            logger.warning(
                "password_reset_rate_limited",
                principal_id=principal.id,
                attempts=attempts,
                retry_after=retry_after,
            )
            raise RateLimited(
                retry_after, "too many password reset requests, try again later"
            )

        raw_token = secrets.token_hex(32)
        expires_at = self._clock() + self.token_ttl
        self.store.save_reset_token(principal.id, hash_reset_token(raw_token), expires_at)
        logger.info(
            "password_reset_requested",
            principal_id=principal.id,
            attempts=attempts,
            expires_at=expires_at.isoformat(),
        )
        return ResetInitiation(principal=principal, raw_token=raw_token, expires_at=expires_at)

    async def complete(self, token: str, new_password: str) -> Principal:
        if not token:
            raise ResetTokenInvalid()
        token_hash = hash_reset_token(token)
        record = await self._read(
            "get_reset_token", lambda: self.store.get_reset_token(token_hash)
        )
        if not record or record.is_expired(self._clock()):
            logger.warning("password_reset_token_rejected", token_hash_prefix=token_hash[:8])
            raise ResetTokenInvalid()
        principal = await self._read(
            "get_principal", lambda: self.store.get_principal(record.principal_id)
        )
        if not principal or not principal.is_active:
            raise ResetTokenInvalid()

        # A weak password leaves the token in place for another try
        check = self.policy.validate(new_password)
        if not check.valid:
            raise WeakPassword(check.violations)

        password_hash, algo = await self.hasher.hash_async(new_password)
        consumed_by = self.store.consume_reset_token(
            token_hash, password_hash, algo, self._clock()
        )
        if consumed_by is None:
            logger.warning("password_reset_token_lost_race", principal_id=principal.id)
            raise ResetTokenInvalid()

        await self.tokens.revoke_all(consumed_by)
        logger.info("password_reset_completed", principal_id=consumed_by)
        return principal

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_reset_tokens(self._clock())
        if removed:
            logger.info("password_reset_tokens_swept", removed=removed)
        return removed


class ResetTokenSweeper:
    """Background task that garbage-collects expired reset tokens."""

    def __init__(
        self,
        manager: ResetTokenManager,
        *,
        interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.manager = manager
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweeper."""
        if self._running:
            logger.warning("reset_sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("reset_sweeper_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("reset_sweeper_stopped")

    async def run_once(self) -> int:
        return await asyncio.to_thread(self.manager.sweep_expired)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "reset_sweeper_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_SWEEP_BACKOFF_SECONDS,
                        self.interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "reset_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval)
