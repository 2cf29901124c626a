"""
Encryption utilities for secrets stored in the database.

Uses Fernet symmetric encryption to protect git repository passwords,
registry secrets and endpoint kubeconfigs. The key lives next to the
database (see config.paths.ENCRYPTION_KEY_PATH) and is generated on first use.

Security Note:
    This protects against database dumps/exports, but does NOT protect against
    full host compromise. If an attacker gains access to both the database
    AND the key file, they can decrypt the data.
"""

import os
import logging
import threading
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config.paths import ENCRYPTION_KEY_PATH

logger = logging.getLogger(__name__)

KEY_PATH = ENCRYPTION_KEY_PATH

_key_lock = threading.Lock()


def _get_or_create_key() -> bytes:
    """
    Load existing encryption key or generate a new one.

    Returns:
        bytes: Fernet encryption key

    Raises:
        IOError: If key file cannot be read or created
    """
    with _key_lock:
        if os.path.exists(KEY_PATH):
            try:
                with open(KEY_PATH, 'rb') as f:
                    return f.read()
            except OSError as e:
                logger.error(f"Failed to read encryption key from {KEY_PATH}: {e}")
                raise IOError(f"Cannot read encryption key: {e}")

        try:
            key = Fernet.generate_key()
            os.makedirs(os.path.dirname(KEY_PATH) or '.', exist_ok=True)

            # Create with restrictive permissions (owner read/write only)
            fd = os.open(KEY_PATH, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, 'wb') as f:
                f.write(key)

            logger.info(f"Generated new encryption key at {KEY_PATH}")
            return key
        except OSError as e:
            logger.error(f"Failed to generate or save encryption key: {e}")
            raise IOError(f"Cannot create encryption key: {e}")


def encrypt_secret(plaintext: Optional[str]) -> Optional[str]:
    """
    Encrypt a secret for storage.

    Empty and None values are stored as None so "no secret" stays distinguishable
    from an encrypted empty string.
    """
    if not plaintext:
        return None

    fernet = Fernet(_get_or_create_key())
    return fernet.encrypt(plaintext.encode('utf-8')).decode('ascii')


def decrypt_secret(encrypted: Optional[str]) -> Optional[str]:
    """
    Decrypt a secret from storage.

    Raises:
        ValueError: If the token is invalid (key mismatch or corrupted data)
    """
    if not encrypted:
        return None

    fernet = Fernet(_get_or_create_key())
    try:
        return fernet.decrypt(encrypted.encode('ascii')).decode('utf-8')
    except InvalidToken:
        logger.error("Failed to decrypt secret: invalid token (key mismatch or corrupted data)")
        raise ValueError("Cannot decrypt secret: invalid encryption token")
