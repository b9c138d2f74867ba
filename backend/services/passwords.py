"""Password hashing with argon2id."""

import logging
from functools import lru_cache

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from config import get_settings

logger = logging.getLogger(__name__)


class PasswordService:
    """
    Hash and verify passwords.

    Cost parameters are fixed when the service is built, normally once per
    process through ``get_password_service()``.
    """

    def __init__(self, memory_cost: int, time_cost: int, parallelism: int):
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when the username is unknown so that both
        # failure paths spend the same hashing time.
        self._dummy_hash = self._hasher.hash("dummy-password-for-timing")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str, candidate: str) -> bool:
        """
        Check ``candidate`` against ``stored_hash``.

        Fails closed: any error (mismatch, corrupt hash, unexpected library
        failure) is reported as a non-match.
        """
        if not stored_hash or candidate is None:
            return False
        try:
            return self._hasher.verify(stored_hash, candidate)
        except (VerificationError, InvalidHash):
            return False
        except Exception:
            logger.exception("Unexpected error during password verification")
            return False

    def verify_dummy(self, candidate: str) -> bool:
        self.verify(self._dummy_hash, candidate or "")
        return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True


@lru_cache()
def get_password_service() -> PasswordService:
    settings = get_settings()
    return PasswordService(
        memory_cost=settings.ARGON2_MEMORY_COST,
        time_cost=settings.ARGON2_TIME_COST,
        parallelism=settings.ARGON2_PARALLELISM,
    )
