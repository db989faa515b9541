from __future__ import annotations

import asyncio
from typing import Optional

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from curasense.config import Settings
from curasense.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id credential hashing with configurable cost.

    ``verify`` never raises: mismatches, malformed hashes and missing hashes all
    come back as ``False``. Plaintext is never logged.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when no user matches so unknown emails cost the same
        self._dummy_hash = self._hasher.hash("curasense-dummy-password")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: Optional[str]) -> bool:
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def needs_rehash(self, hashed: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True

    def dummy_verify(self, plaintext: str) -> bool:
        self.verify(plaintext, self._dummy_hash)
        return False

    async def hash_async(self, plaintext: str) -> str:
        return await asyncio.to_thread(self.hash, plaintext)

    async def verify_async(self, plaintext: str, hashed: Optional[str]) -> bool:
        return await asyncio.to_thread(self.verify, plaintext, hashed)

    async def dummy_verify_async(self, plaintext: str) -> bool:
        return await asyncio.to_thread(self.dummy_verify, plaintext)
