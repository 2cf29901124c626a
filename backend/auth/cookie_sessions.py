"""
Secure Cookie-Based Session Management for Stackyard

SECURITY FEATURES:
- HttpOnly cookies (XSS protection)
- SameSite=lax (CSRF protection)
- Signed cookies with itsdangerous (tamper-proof)
- Session expiry with automatic cleanup

MEMORY SAFETY:
- Thread-safe session storage with locks
- Automatic cleanup of expired sessions
- Graceful shutdown with cleanup thread termination
"""

import json
import logging
import secrets
import threading
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from itsdangerous import URLSafeTimedSerializer, SignatureExpired, BadSignature

from config.paths import DATA_DIR
from config.settings import AppConfig

logger = logging.getLogger(__name__)


def _load_or_generate_secret() -> str:
    """
    Load existing session secret or generate new one.

    The secret is persisted so users stay logged in across restarts.

    Returns:
        Session secret key
    """
    secret_file = os.getenv('SESSION_SECRET_FILE', os.path.join(DATA_DIR, '.session_secret'))

    if os.path.exists(secret_file):
        try:
            with open(secret_file, 'r') as f:
                data = json.load(f)
            secret = data.get('secret')
            if secret and len(secret) >= 32:
                logger.info("Loaded existing session secret from file")
                return secret
            logger.warning(f"Invalid secret in {secret_file}, regenerating")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load secret from {secret_file}: {e}")

    # Generate new secret and save it with metadata
    secret = secrets.token_urlsafe(32)
    secret_data = {
        'secret': secret,
        'created_at': datetime.now(timezone.utc).isoformat(),
    }

    try:
        os.makedirs(os.path.dirname(secret_file) or '.', exist_ok=True)

        # SECURITY: Set restrictive umask before file creation
        old_umask = os.umask(0o077)
        try:
            with open(secret_file, 'w') as f:
                json.dump(secret_data, f, indent=2)
            os.chmod(secret_file, 0o600)
        finally:
            os.umask(old_umask)

        logger.info(f"Generated new session secret and saved to {secret_file}")
    except OSError as e:
        logger.error(f"Failed to save secret to {secret_file}: {e}")
        logger.warning("Using ephemeral secret (sessions will be invalidated on restart)")

    return secret


# Secret key for signing cookies (persists across restarts)
# SECURITY: Can be overridden with SESSION_SECRET_KEY env var
SECRET_KEY = os.getenv('SESSION_SECRET_KEY') or _load_or_generate_secret()
COOKIE_SIGNER = URLSafeTimedSerializer(SECRET_KEY, salt="stackyard-session")


class SessionLimitError(RuntimeError):
    """Raised when the maximum number of concurrent sessions is reached."""
    pass


class CookieSessionManager:
    """
    Manages cookie-based sessions.

    The cookie only carries a signed random session id; user data stays
    server-side.
    """

    def __init__(self, session_timeout_hours: int = 8, max_sessions: int = 10000):
        """
        Initialize session manager.

        Args:
            session_timeout_hours: Session expiry time
            max_sessions: Maximum concurrent sessions (default 10,000)
        """
        self.sessions: Dict[str, dict] = {}
        self.session_timeout = timedelta(hours=session_timeout_hours)
        self.max_sessions = max_sessions
        self._sessions_lock = threading.Lock()
        self._shutdown_event = threading.Event()

        # Start cleanup thread (runs every hour)
        self._cleanup_thread = threading.Thread(
            target=self._periodic_cleanup,
            daemon=True,
            name="SessionCleanup"
        )
        self._cleanup_thread.start()
        logger.info(f"Cookie session manager initialized (timeout: {session_timeout_hours}h, max: {max_sessions})")

    def _periodic_cleanup(self):
        """Periodic cleanup of expired sessions."""
        while not self._shutdown_event.wait(timeout=3600):  # Run every hour
            try:
                deleted = self.cleanup_expired_sessions()
                if deleted > 0:
                    logger.info(f"Session cleanup: removed {deleted} expired sessions")
            except Exception as e:
                logger.error(f"Session cleanup failed: {e}", exc_info=True)

    def create_session(self, user_id: int, username: str, role: int, client_ip: str) -> str:
        """
        Create a new session and return signed cookie value.

        Returns:
            Signed session token for cookie

        Raises:
            SessionLimitError: If max session limit reached after cleanup
        """
        session_id = secrets.token_urlsafe(32)
        now = datetime.now(timezone.utc)

        with self._sessions_lock:
            if len(self.sessions) >= self.max_sessions:
                expired = self._cleanup_expired_sessions_unsafe()
                if expired > 0:
                    logger.info(f"Session limit reached, cleaned {expired} expired sessions")

                if len(self.sessions) >= self.max_sessions:
                    logger.error(f"Session limit exceeded: {len(self.sessions)}/{self.max_sessions}")
                    raise SessionLimitError("Server at maximum capacity - please try again later")

            self.sessions[session_id] = {
                "user_id": user_id,
                "username": username,
                "role": role,
                "client_ip": client_ip,
                "created_at": now,
                "last_accessed": now,
            }

        # Sign the session ID for tamper-proof cookie
        signed_token = COOKIE_SIGNER.dumps(session_id)

        logger.info(f"Session created for user '{username}' (ID: {user_id}) from {client_ip}")
        return signed_token

    def validate_session(self, signed_token: str, client_ip: str) -> Optional[Dict]:
        """
        Validate session token and return session data.

        Returns:
            Dict with user_id, username, role, session_id or None if invalid
        """
        if not signed_token:
            return None

        # 1. Verify signature and extract session ID
        try:
            session_id = COOKIE_SIGNER.loads(
                signed_token,
                max_age=int(self.session_timeout.total_seconds())
            )
        except SignatureExpired:
            logger.warning(f"Session token expired for IP {client_ip}")
            return None
        except BadSignature:
            logger.warning(f"Invalid session signature from IP {client_ip} (possible tampering)")
            return None

        # 2. Check session exists
        with self._sessions_lock:
            session = self.sessions.get(session_id)
            if session is None:
                logger.warning(f"Session {session_id[:8]}... not found for IP {client_ip}")
                return None

            now = datetime.now(timezone.utc)

            # 3. Check expiry (belt and suspenders with cookie max_age)
            if now - session["created_at"] > self.session_timeout:
                del self.sessions[session_id]
                logger.info(f"Session {session_id[:8]}... expired for user '{session['username']}'")
                return None

            session["last_accessed"] = now

            return {
                "user_id": session["user_id"],
                "username": session["username"],
                "role": session["role"],
                "session_id": session_id,
            }

    def delete_session(self, signed_token: str) -> bool:
        """
        Delete a session (logout).

        Returns:
            True if session was deleted, False if not found
        """
        try:
            session_id = COOKIE_SIGNER.loads(signed_token)
        except (SignatureExpired, BadSignature):
            return False

        with self._sessions_lock:
            if session_id in self.sessions:
                username = self.sessions[session_id].get("username", "unknown")
                del self.sessions[session_id]
                logger.info(f"Session deleted for user '{username}'")
                return True

        return False

    def _cleanup_expired_sessions_unsafe(self) -> int:
        """
        Remove expired sessions (UNSAFE - must be called with lock held).

        Returns:
            Number of sessions deleted
        """
        now = datetime.now(timezone.utc)
        expired = [
            session_id for session_id, data in self.sessions.items()
            if now - data["created_at"] > self.session_timeout
        ]

        for session_id in expired:
            del self.sessions[session_id]

        return len(expired)

    def cleanup_expired_sessions(self) -> int:
        """Remove all expired sessions (thread-safe)."""
        with self._sessions_lock:
            return self._cleanup_expired_sessions_unsafe()

    def get_active_session_count(self) -> int:
        with self._sessions_lock:
            return len(self.sessions)

    def shutdown(self):
        """Gracefully shutdown session manager."""
        logger.info("Shutting down cookie session manager...")
        self._shutdown_event.set()
        self._cleanup_thread.join(timeout=5)
        logger.info(f"Session manager shutdown complete ({self.get_active_session_count()} active sessions)")


# Global instance
cookie_session_manager = CookieSessionManager(session_timeout_hours=AppConfig.SESSION_TIMEOUT_HOURS)
