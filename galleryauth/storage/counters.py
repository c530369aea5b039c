from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple, Union

from galleryauth.logging import get_logger

# Shared key layout
LOGIN_ATTEMPTS_PREFIX = "auth:login_attempts:"
RESET_ATTEMPTS_PREFIX = "auth:reset_attempts:"
REVOKED_JTI_PREFIX = "auth:revoked:"
REVOKED_BEFORE_PREFIX = "auth:revoked_before:"


class SharedCounterStore(Protocol):
    """TTL key/value store with atomic counters shared by every instance."""

    async def get(self, key: str) -> Optional[str]: ...

    async def get_fields(self, key: str) -> Dict[str, str]: ...

    async def atomic_increment(self, key: str, ttl: int) -> int: ...

    async def record_failure(
        self,
        key: str,
        *,
        window_seconds: int,
        threshold: int,
        lockout_seconds: int,
        now: float,
    ) -> Tuple[int, Optional[float]]: ...

    async def set(self, key: str, value: str, ttl: int) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> Optional[int]: ...

    async def close(self) -> None: ...


class _Entry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: Union[str, Dict[str, str]], expires_at: Optional[float]):
        self.value = value
        self.expires_at = expires_at


class MemoryCounterStore:
    """Single-process counter store mirroring the Redis semantics.

    Every operation runs inside one critical section so increments and the
    lockout threshold check cannot interleave.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def _expire(self, entry: _Entry, ttl: int) -> None:
        entry.expires_at = self._clock() + ttl

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None or isinstance(entry.value, dict):
                return None
            return entry.value

    async def get_fields(self, key: str) -> Dict[str, str]:
        with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, dict):
                return {}
            return dict(entry.value)

    async def atomic_increment(self, key: str, ttl: int) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry("0", None)
                self._entries[key] = entry
            count = int(entry.value) + 1
            entry.value = str(count)
            if count == 1:
                self._expire(entry, ttl)
            return count

    async def record_failure(
        self,
        key: str,
        *,
        window_seconds: int,
        threshold: int,
        lockout_seconds: int,
        now: float,
    ) -> Tuple[int, Optional[float]]:
        with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, dict):
                entry = _Entry({"fail_count": "0"}, None)
                self._entries[key] = entry
            fields = entry.value
            count = int(fields.get("fail_count", "0")) + 1
            fields["fail_count"] = str(count)
            if count == 1:
                self._expire(entry, window_seconds)
            locked_raw = fields.get("locked_until")
            if count >= threshold and not locked_raw:
                locked_raw = repr(now + lockout_seconds)
                fields["locked_until"] = locked_raw
                self._expire(entry, lockout_seconds)
            return count, float(locked_raw) if locked_raw else None

    async def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._entries[key] = _Entry(str(value), self._clock() + ttl)

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = _Entry(str(value), self._clock() + ttl)
            return True

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry.expires_at is None:
                return None
            return max(1, math.ceil(entry.expires_at - self._clock()))

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
