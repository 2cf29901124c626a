"""
Stackyard User Management Routes - Admin-only user creation

SECURITY:
- Requires an administrator session
- Passwords are only accepted (and hashed) under internal authentication;
  LDAP/OAuth own the credentials of their users
- Responses never include the password hash
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError

from auth.crypto import CryptoHashError, CryptoService
from auth.password_policy import PasswordStrengthChecker
from auth.routes import require_admin
from auth.shared import get_client_ip, get_crypto_service, get_db
from database import (
    AUTH_INTERNAL, AUTH_LDAP, AUTH_OAUTH,
    DatabaseManager, DuplicateObjectError, ObjectNotFoundError, User,
)
from models.auth_models import TokenData, UserCreatePayload, UserResponse
from security.audit import security_audit
from utils.errors import BadRequestError, ConflictError, InternalServerError, ServiceError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/users", tags=["user-management"])


def create_user(
    payload: UserCreatePayload,
    db: DatabaseManager,
    crypto: CryptoService,
    checker: PasswordStrengthChecker,
) -> User:
    """
    Create a user after the uniqueness and credential policy checks.

    Raises:
        ConflictError: If the username is taken
        BadRequestError: If a password is given under LDAP/OAuth, or the
            password fails the strength check under internal authentication
        InternalServerError: On store or hash failures
    """
    try:
        db.user_by_username(payload.username)
    except ObjectNotFoundError:
        pass  # Not found is the expected outcome
    except SQLAlchemyError as e:
        logger.error(f"Unable to retrieve users from the database: {e}", exc_info=True)
        raise InternalServerError("Unable to retrieve users from the database")
    else:
        raise ConflictError("Another user with the same username already exists")

    try:
        settings = db.get_settings()
    except (ObjectNotFoundError, SQLAlchemyError) as e:
        logger.error(f"Unable to retrieve settings from the database: {e}", exc_info=True)
        raise InternalServerError("Unable to retrieve settings from the database")

    user = User(username=payload.username, role=payload.role)

    if settings.authentication_method in (AUTH_LDAP, AUTH_OAUTH) and payload.password:
        raise BadRequestError(
            "A user with password can not be created when authentication method is Oauth or LDAP"
        )

    if settings.authentication_method == AUTH_INTERNAL:
        if not checker.check(payload.password):
            raise BadRequestError("Password does not meet the requirements")
        try:
            user.password_hash = crypto.hash(payload.password)
        except CryptoHashError as e:
            logger.error(f"Unable to hash user password: {e}")
            raise InternalServerError("Unable to hash user password")

    try:
        return db.create_user(user)
    except DuplicateObjectError:
        # Lost a race with a concurrent creation of the same username
        raise ConflictError("Another user with the same username already exists")
    except SQLAlchemyError as e:
        logger.error(f"Unable to persist user inside the database: {e}", exc_info=True)
        raise InternalServerError("Unable to persist user inside the database")


@router.post("", response_model=UserResponse)
async def create_user_route(
    payload: UserCreatePayload,
    request: Request,
    current_user: TokenData = Depends(require_admin),
    db: DatabaseManager = Depends(get_db),
    crypto: CryptoService = Depends(get_crypto_service),
) -> UserResponse:
    """Create a new user (administrators only)."""
    client_ip = get_client_ip(request)

    try:
        user = create_user(payload, db, crypto, PasswordStrengthChecker(db))
    except ServiceError as e:
        security_audit.log_privileged_action(
            client_ip, "create_user", payload.username, False, username=current_user.username,
        )
        raise e.to_http_exception()

    security_audit.log_privileged_action(
        client_ip, "create_user", user.username, True, username=current_user.username,
    )
    logger.info(f"User '{user.username}' (role {user.role}) created by {current_user.username}")

    return UserResponse(id=user.id, username=user.username, role=user.role, created_at=user.created_at)
