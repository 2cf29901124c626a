"""
Password hashing for Stackyard users

Argon2id with a per-hash random salt (embedded in the encoded hash).
"""

import logging

from argon2 import PasswordHasher
from argon2.exceptions import HashingError, InvalidHashError, VerificationError, VerifyMismatchError

logger = logging.getLogger(__name__)

# Argon2 password hasher
# SECURITY: Argon2id is resistant to GPU attacks
ph = PasswordHasher(
    time_cost=2,        # Number of iterations
    memory_cost=65536,  # 64 MB memory
    parallelism=1,      # Number of threads
    hash_len=32,        # Hash length in bytes
    salt_len=16         # Salt length in bytes
)


class CryptoHashError(RuntimeError):
    """Raised when a password cannot be hashed."""
    pass


class CryptoService:
    """One-way password hashing."""

    def __init__(self, hasher: PasswordHasher = ph):
        self.hasher = hasher

    def hash(self, password: str) -> str:
        """
        Hash a password.

        Raises:
            CryptoHashError: If hashing fails
        """
        try:
            return self.hasher.hash(password)
        except HashingError as e:
            raise CryptoHashError(f"Unable to hash password: {e}")

    def verify(self, password_hash: str, password: str) -> bool:
        """True if password matches password_hash. Malformed hashes never match."""
        if not password_hash:
            return False
        try:
            return self.hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as e:
            logger.warning(f"Password verification failed: {e}")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        return self.hasher.check_needs_rehash(password_hash)
