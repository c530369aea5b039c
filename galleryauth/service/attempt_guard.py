from __future__ import annotations

import hashlib
import math
from datetime import datetime, timezone
from typing import Callable, Optional

from galleryauth.config import LockoutKeyStrategy, Settings
from galleryauth.logging import get_logger
from galleryauth.service.errors import AccountLocked
from galleryauth.storage.counters import LOGIN_ATTEMPTS_PREFIX, SharedCounterStore
from galleryauth.storage.models import LoginAttemptCounter, normalize_email

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttemptGuard:
    """Failed-login counters and lockout windows per login identifier.

    The increment and the threshold check happen in one store operation, so
    concurrent failures for one identifier behave like some serial order.
    """

    def __init__(
        self,
        settings: Settings,
        counters: SharedCounterStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.counters = counters
        self._clock = clock
        self.max_attempts = settings.max_login_attempts
        self.window_seconds = settings.login_failure_window_seconds
        self.lockout_seconds = settings.lockout_seconds

    def identifier_for(self, email: str, ip_addr: Optional[str] = None) -> str:
        normalized = normalize_email(email)
        if self.settings.lockout_key_strategy == LockoutKeyStrategy.EMAIL_IP and ip_addr:
            normalized = f"{normalized}|{ip_addr.strip()}"
        # Hashed so raw addresses never appear in shared-store keys
        return hashlib.sha256(normalized.encode()).hexdigest()

    def _key(self, identifier: str) -> str:
        return f"{LOGIN_ATTEMPTS_PREFIX}{identifier}"

    async def get_counter(self, identifier: str) -> LoginAttemptCounter:
        fields = await self.counters.get_fields(self._key(identifier))
        locked_raw = fields.get("locked_until")
        return LoginAttemptCounter(
            identifier=identifier,
            fail_count=int(fields.get("fail_count", 0) or 0),
            locked_until=float(locked_raw) if locked_raw else None,
        )

    async def check_allowed(self, identifier: str) -> None:
        counter = await self.get_counter(identifier)
        now = self._clock().timestamp()
        if counter.is_locked(now, self.max_attempts):
            retry_after = math.ceil(counter.locked_until - now)
            logger.warning(
                "login_locked_out",
                identifier_hash=identifier,
                fail_count=counter.fail_count,
                retry_after=retry_after,
            )
            raise AccountLocked(retry_after)

    async def record_success(self, identifier: str) -> None:
        await self.counters.delete(self._key(identifier))

    async def record_failure(self, identifier: str) -> LoginAttemptCounter:
        count, locked_until = await self.counters.record_failure(
            self._key(identifier),
            window_seconds=self.window_seconds,
            threshold=self.max_attempts,
            lockout_seconds=self.lockout_seconds,
            now=self._clock().timestamp(),
        )
        counter = LoginAttemptCounter(
            identifier=identifier, fail_count=count, locked_until=locked_until
        )
        if locked_until is not None and count == self.max_attempts:
            logger.warning(
                "login_lockout_started",
                identifier_hash=identifier,
                lockout_seconds=self.lockout_seconds,
            )
        return counter
