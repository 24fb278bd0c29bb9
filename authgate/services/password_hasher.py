"""One-way password hashing backed by bcrypt."""

import asyncio
from typing import Optional

import bcrypt

MIN_ROUNDS = 10


class PasswordHasher:
    """Hashes and verifies passwords with a fixed bcrypt cost factor.

    bcrypt is deliberately slow, so both operations run in a worker thread
    to keep the event loop responsive.
    """

    def __init__(self, rounds: int = MIN_ROUNDS) -> None:
        if rounds < MIN_ROUNDS:
            raise ValueError(f"bcrypt cost factor must be at least {MIN_ROUNDS}")
        self.rounds = rounds
        self._dummy_hash: Optional[str] = None

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self._hash_sync, password)

    async def verify(self, password: str, password_hash: Optional[str]) -> bool:
        """
        Check a plaintext password against a stored digest.

        Args:
            password: Plain text password
            password_hash: Stored bcrypt digest, ``None`` for unknown users and
                social-only accounts

        Returns:
            True if the password matches, False otherwise
        """
        if not password_hash:
            # Same cost as a real check, so a missing account is not observable by timing.
            await asyncio.to_thread(self._verify_sync, password, await self._get_dummy_hash())
            return False
        return await asyncio.to_thread(self._verify_sync, password, password_hash)

    async def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = await self.hash("dummy-password-for-timing")
        return self._dummy_hash

    def _hash_sync(self, password: str) -> str:
        return bcrypt.hashpw(
            password.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)
        ).decode("utf-8")

    @staticmethod
    def _verify_sync(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            # Malformed digest, or a password past bcrypt's 72-byte limit.
            return False
