"""
Shared authentication utilities
Dependency providers and helpers used by every route module
"""

import logging
import secrets

from fastapi import Request

from auth.crypto import CryptoService
from database import DatabaseManager, User, ROLE_ADMINISTRATOR, get_database_manager

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_USERNAME = 'admin'

_crypto_service = CryptoService()


def get_db() -> DatabaseManager:
    """FastAPI dependency for the process-wide DatabaseManager"""
    return get_database_manager()


def get_crypto_service() -> CryptoService:
    """FastAPI dependency for password hashing"""
    return _crypto_service


def get_client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def ensure_default_admin(db: DatabaseManager, crypto: CryptoService = _crypto_service) -> bool:
    """
    Create the initial administrator when the database has no users.

    The random password is logged once; nothing else stores it.

    Returns:
        True if the administrator was created
    """
    if db.count_users() > 0:
        return False

    password = secrets.token_urlsafe(16)
    db.create_user(User(
        username=DEFAULT_ADMIN_USERNAME,
        password_hash=crypto.hash(password),
        role=ROLE_ADMINISTRATOR,
    ))
    logger.warning(
        f"Created initial administrator '{DEFAULT_ADMIN_USERNAME}' with password: {password} "
        f"(shown once, change it after first login)"
    )
    return True
