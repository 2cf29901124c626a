"""
Password strength policy

The only knob is the minimum length from GlobalSettings; the verdict is binary.
"""

import logging

from database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_PASSWORD_LENGTH = 12


class PasswordStrengthChecker:
    """Checks passwords against the configured minimum length."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def required_length(self) -> int:
        settings = self.db.get_settings()
        return settings.required_password_length or DEFAULT_REQUIRED_PASSWORD_LENGTH

    def check(self, password: str) -> bool:
        """True if password meets the policy."""
        if not password:
            return False
        return len(password) >= self.required_length()
