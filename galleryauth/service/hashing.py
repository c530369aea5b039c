from __future__ import annotations

import asyncio
from typing import Optional, Tuple

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from galleryauth.logging import get_logger

ALGORITHM = "argon2id"

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing shared by admins and regular users.

    The async variants push the CPU-bound work onto a worker thread so the
    event loop keeps serving other requests.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when the email is unknown so both paths cost the same
        self._dummy_hash = self._hasher.hash("galleryauth-timing-equalizer")

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), ALGORITHM

    def verify(self, record: Optional[Tuple[str, str]], password: str) -> bool:
        if not record:
            return False
        stored_hash, algo = record
        if algo != ALGORITHM:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def burn(self, password: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    async def hash_async(self, password: str) -> Tuple[str, str]:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(
        self, record: Optional[Tuple[str, str]], password: str
    ) -> bool:
        return await asyncio.to_thread(self.verify, record, password)

    async def burn_async(self, password: str) -> None:
        await asyncio.to_thread(self.burn, password)
