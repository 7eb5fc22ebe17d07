from __future__ import annotations

from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authkeeper.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, hashed: Optional[str]) -> bool: ...


class Argon2Hasher:
    """argon2id hashing; verifying against a missing hash is always False."""

    algorithm = "argon2id"

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: Optional[str]) -> bool:
        if not hashed or plaintext is None:
            return False
        try:
            return self._pwd_hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable", algorithm=self.algorithm)
            return False


__all__ = ["Argon2Hasher", "CredentialHasher"]
