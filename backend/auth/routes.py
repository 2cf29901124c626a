"""
Authentication Routes for Stackyard - Cookie-Based Sessions

SECURITY:
1. HttpOnly cookies (XSS protection - JS can't access)
2. SameSite=lax (CSRF protection)
3. Argon2id password hashing
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from auth.cookie_sessions import cookie_session_manager, SessionLimitError
from auth.crypto import CryptoService
from auth.shared import get_client_ip, get_crypto_service, get_db
from config.settings import AppConfig
from database import DatabaseManager, ObjectNotFoundError
from models.auth_models import LoginRequest, TokenData
from security.audit import security_audit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["authentication"])

SESSION_COOKIE = "session_id"


@router.post("/login")
async def login(
    credentials: LoginRequest,
    request: Request,
    response: Response,
    db: DatabaseManager = Depends(get_db),
    crypto: CryptoService = Depends(get_crypto_service),
):
    """
    Authenticate user and create session cookie.

    Returns:
        User data and session cookie
    """
    client_ip = get_client_ip(request)
    user_agent = request.headers.get("user-agent", "unknown")

    try:
        user = db.user_by_username(credentials.username)
    except ObjectNotFoundError:
        user = None

    # Users managed by LDAP/OAuth have no local hash and can't log in here
    if user is None or not crypto.verify(user.password_hash, credentials.password):
        logger.warning(f"Login failed for user '{credentials.username}'")
        security_audit.log_login_failure(client_ip, user_agent, "invalid credentials")
        raise HTTPException(status_code=401, detail="Invalid username or password")

    try:
        signed_token = cookie_session_manager.create_session(
            user_id=user.id,
            username=user.username,
            role=user.role,
            client_ip=client_ip,
        )
    except SessionLimitError as e:
        raise HTTPException(status_code=503, detail=str(e))

    # SECURITY: JavaScript cannot access this cookie
    response.set_cookie(
        key=SESSION_COOKIE,
        value=signed_token,
        httponly=True,
        secure=request.url.scheme == "https",
        samesite="lax",
        max_age=AppConfig.SESSION_TIMEOUT_HOURS * 3600,
        path="/",
    )

    security_audit.log_login_success(client_ip, user_agent, user.username)
    logger.info(f"User '{user.username}' logged in successfully from {client_ip}")

    return {
        "user": {"id": user.id, "username": user.username, "role": user.role},
        "message": "Login successful",
    }


@router.post("/logout")
async def logout(request: Request, response: Response):
    """Logout user and delete session."""
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        cookie_session_manager.delete_session(session_id)

    response.delete_cookie(key=SESSION_COOKIE, path="/")
    return {"message": "Logout successful"}


def get_token_data(request: Request) -> Optional[TokenData]:
    """
    Identity of the caller, or None when there is no valid session.

    Callers decide what a missing identity means for them.
    """
    signed_token = request.cookies.get(SESSION_COOKIE)
    if not signed_token:
        return None

    session_data = cookie_session_manager.validate_session(signed_token, get_client_ip(request))
    if not session_data:
        return None

    return TokenData(
        id=session_data["user_id"],
        username=session_data["username"],
        role=session_data["role"],
    )


async def get_current_user(request: Request) -> TokenData:
    """
    Dependency for protected routes.

    Raises:
        HTTPException: 401 if there is no valid session
    """
    token_data = get_token_data(request)
    if token_data is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return token_data


async def require_admin(request: Request, current_user: TokenData = Depends(get_current_user)) -> TokenData:
    """
    Dependency for administrator-only routes.

    Raises:
        HTTPException: 403 if the caller is not an administrator
    """
    if not current_user.is_admin:
        security_audit.log_permission_denied(get_client_ip(request), request.url.path, current_user.username)
        raise HTTPException(status_code=403, detail="Permission denied")
    return current_user


@router.get("/me")
async def get_me(current_user: TokenData = Depends(get_current_user)):
    """Get current authenticated user."""
    return {"user": current_user.model_dump()}
