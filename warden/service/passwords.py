from __future__ import annotations

import asyncio
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger

logger = get_logger(__name__)


class PasswordHasherService:
    """argon2id hashing dispatched to a worker thread.

    Hashing is the one deliberately slow step of a login; running it off the
    event loop keeps concurrent logins from queueing behind each other.
    """

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Compared against when the user does not exist so both paths cost the same
        self._dummy_hash = self._hasher.hash("warden-timing-equalizer")

    def hash_sync(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_sync(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            # OAuth-only account: burn the same work, then refuse
            self._check(self._dummy_hash, password)
            return False
        return self._check(stored_hash, password)

    def _check(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hash_sync, password)

    async def verify(self, stored_hash: Optional[str], password: str) -> bool:
        return await asyncio.to_thread(self.verify_sync, stored_hash, password)
