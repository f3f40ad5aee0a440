from __future__ import annotations

import asyncio
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from agora.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """argon2id hashing; the CPU-bound work runs on a worker thread."""

    algorithm = "argon2id"

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hash_password, password)

    async def verify(self, stored_hash: Optional[str], password: str) -> bool:
        return await asyncio.to_thread(self.verify_password, stored_hash, password)


__all__ = ["PasswordService"]
