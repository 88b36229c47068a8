from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.config import Settings
from warden.logging import get_logger

logger = get_logger(__name__)


class Argon2PasswordHasher:
    """argon2id hashing with a fixed, documented cost.

    Defaults (t=3, m=64 MiB, p=4) sit above the OWASP argon2id baseline,
    comparable to bcrypt cost 12 in wall-clock terms.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when no real hash exists, so unknown accounts and
        # OAuth-only principals cost the same as a wrong password.
        self._dummy_hash = self._hasher.hash("warden-timing-equalizer")

    @classmethod
    def from_settings(cls, settings: Settings) -> "Argon2PasswordHasher":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: Optional[str]) -> bool:
        if not isinstance(plaintext, str):
            plaintext = ""
        if not password_hash:
            try:
                self._hasher.verify(self._dummy_hash, plaintext)
            except VerificationError:
                pass
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return False
