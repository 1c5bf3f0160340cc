from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from photofilter.config import Settings
from photofilter.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """Salted argon2id hashing with configurable cost parameters."""

    def __init__(
        self,
        *,
        time_cost: int = 2,
        memory_cost: int = 19 * 1024,
        parallelism: int = 1,
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Fixed hash for equalizing the cost of unknown-user logins
        self._dummy_hash = self._hasher.hash("photofilter-dummy-password")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: Optional[str]) -> bool:
        """Return True only for a matching password; never raises on bad input."""
        if not password_hash or plaintext is None:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def dummy_verify(self, plaintext: str) -> None:
        self.verify(plaintext or "", self._dummy_hash)
