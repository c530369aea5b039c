"""Bounded retry for idempotent store reads.

Only reads go through here. Writes such as a password update or a reset token
consumption are attempted once and any failure is surfaced to the caller.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, TypeVar, Union

from galleryauth.logging import get_logger
from galleryauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")

MAX_BACKOFF_SECONDS = 2.0


async def retry_read(
    operation: str,
    fn: Callable[[], Union[T, Awaitable[T]]],
    *,
    retries: int = 2,
    base_delay: float = 0.05,
) -> T:
    """Run ``fn`` and retry on ``StoreUnavailable`` with exponential backoff.

    ``fn`` may be a plain callable or return an awaitable. After ``retries``
    extra attempts the last ``StoreUnavailable`` is re-raised.
    """
    attempt = 0
    while True:
        try:
            result: Any = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        except StoreUnavailable as exc:
            if attempt >= retries:
                logger.error(
                    "store_read_failed",
                    operation=operation,
                    backend=exc.backend,
                    attempts=attempt + 1,
                )
                raise
            backoff = min(base_delay * (2**attempt), MAX_BACKOFF_SECONDS)
            attempt += 1
            logger.warning(
                "store_read_retry",
                operation=operation,
                backend=exc.backend,
                attempt=attempt,
                backoff_seconds=backoff,
            )
            await asyncio.sleep(backoff)
