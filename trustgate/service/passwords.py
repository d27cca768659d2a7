from __future__ import annotations

import hashlib
import hmac

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from trustgate.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """Peppered argon2id password hashing.

    The password is first keyed with the server-side pepper (HMAC-SHA256) so a
    leaked hash table alone cannot be brute-forced, then hashed with argon2id,
    which carries its own per-hash salt.
    """

    algorithm = "argon2id"

    def __init__(self, pepper: str = "") -> None:
        self._pepper = pepper.encode()
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the account does not exist, to keep timing uniform
        self._dummy_hash = self._pwd_hasher.hash(self._pepper_password("dummy-password"))

    def _pepper_password(self, password: str) -> str:
        return hmac.new(self._pepper, password.encode(), hashlib.sha256).hexdigest()

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(self._pepper_password(password))

    def verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, self._pepper_password(password))
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def verify_dummy(self, password: str) -> None:
        """Spend the same work as a real verification and discard the result."""
        self.verify_password(self._dummy_hash, password)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
