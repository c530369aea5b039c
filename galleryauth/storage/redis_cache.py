from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from galleryauth.logging import get_logger
from galleryauth.storage.errors import StoreUnavailable
from galleryauth.storage.retry import retry_read

T = TypeVar("T")


class RedisCounterStore:
    """Redis-backed counters, lockouts and token blacklist entries."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and start the window on the first hit only
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    # Increment fail_count, open the failure window on the first failure and
    # switch the key to the lockout duration when the threshold is reached.
    _RECORD_FAILURE_SCRIPT = """
local count = redis.call('HINCRBY', KEYS[1], 'fail_count', 1)
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local locked = redis.call('HGET', KEYS[1], 'locked_until')
if count >= tonumber(ARGV[2]) and not locked then
  locked = tostring(tonumber(ARGV[4]) + tonumber(ARGV[3]))
  redis.call('HSET', KEYS[1], 'locked_until', locked)
  redis.call('EXPIRE', KEYS[1], ARGV[3])
end
return {count, locked or ''}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        read_retries: int = 2,
        retry_base_delay: float = 0.05,
    ) -> None:
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.read_retries = read_retries
        self.retry_base_delay = retry_base_delay
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)
        self._record_failure = self.client.register_script(self._RECORD_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, operation: str, coro: Awaitable[T]) -> T:
        try:
            return await coro
        except RedisError as exc:
            self.logger.error(
                "redis_operation_failed",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise StoreUnavailable(
                "counter store unavailable", backend="redis", operation=operation
            ) from exc

    async def _read(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await retry_read(
            operation,
            lambda: self._call(operation, fn()),
            retries=self.read_retries,
            base_delay=self.retry_base_delay,
        )

    async def get(self, key: str) -> Optional[str]:
        return await self._read("get", lambda: self.client.get(key))

    async def get_fields(self, key: str) -> Dict[str, str]:
        fields = await self._read("hgetall", lambda: self.client.hgetall(key))
        return dict(fields or {})

    async def atomic_increment(self, key: str, ttl: int) -> int:
        result = await self._call(
            "increment", self._increment(keys=[key], args=[int(ttl)])
        )
        return int(result)

    async def record_failure(
        self,
        key: str,
        *,
        window_seconds: int,
        threshold: int,
        lockout_seconds: int,
        now: float,
    ) -> Tuple[int, Optional[float]]:
        result: Any = await self._call(
            "record_failure",
            self._record_failure(
                keys=[key],
                args=[int(window_seconds), int(threshold), int(lockout_seconds), repr(now)],
            ),
        )
        count = int(result[0])
        locked_until = float(result[1]) if result[1] else None
        return count, locked_until

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._call("set", self.client.set(key, value, ex=int(ttl)))

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        acquired = await self._call(
            "set_nx", self.client.set(key, value, ex=int(ttl), nx=True)
        )
        return bool(acquired)

    async def delete(self, key: str) -> None:
        await self._call("delete", self.client.delete(key))

    async def exists(self, key: str) -> bool:
        count = await self._read("exists", lambda: self.client.exists(key))
        return bool(count)

    async def ttl(self, key: str) -> Optional[int]:
        remaining = await self._read("ttl", lambda: self.client.ttl(key))
        # -2: missing key, -1: no expiry
        if remaining is None or int(remaining) < 0:
            return None
        return int(remaining)

    async def close(self) -> None:
        """Close Redis connection."""
        await self.client.aclose()
