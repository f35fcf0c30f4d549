from __future__ import annotations

import re

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from campusauth.logging import get_logger
from campusauth.service.errors import WeakPasswordError

logger = get_logger(__name__)

WEAK_PASSWORD_MESSAGE = (
    "Password must be at least 8 characters and contain letters and numbers"
)

_LETTER = re.compile(r"[A-Za-z]")
_DIGIT = re.compile(r"[0-9]")


class PasswordPolicy:
    """Minimum length plus at least one letter and one digit."""

    def __init__(self, min_length: int = 8) -> None:
        self.min_length = min_length

    def is_acceptable(self, password: str | None) -> bool:
        if not password or len(password) < self.min_length:
            return False
        return bool(_LETTER.search(password) and _DIGIT.search(password))

    def validate(self, password: str | None) -> None:
        if not self.is_acceptable(password):
            raise WeakPasswordError(WEAK_PASSWORD_MESSAGE)


class PasswordHashing:
    """argon2id hashing for principal passwords."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerificationError:
            return False
        except InvalidHashError:
            logger.warning("password_hash_invalid")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return True
