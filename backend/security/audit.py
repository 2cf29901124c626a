"""
Security Audit Logging System for Stackyard
Tracks security-relevant events (logins, user creation, stack updates) for incident response
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional


class SecurityAuditLogger:
    """
    Security audit logging system
    Writes one JSON document per event to logs/security_audit.log
    """
    def __init__(self, log_dir: Optional[str] = None):
        self.security_logger = logging.getLogger('security_audit')

        # Create separate log file for security events in persistent volume
        if log_dir is None:
            from config.paths import DATA_DIR
            log_dir = os.path.join(DATA_DIR, 'logs')
        os.makedirs(log_dir, mode=0o700, exist_ok=True)

        # Rotating file handler for security audit logs
        # Max 10MB per file, keep 14 backups (total max 150MB with current + 14 backups)
        security_handler = RotatingFileHandler(
            os.path.join(log_dir, 'security_audit.log'),
            maxBytes=10*1024*1024,  # 10MB
            backupCount=14,  # Keep 14 old files
            encoding='utf-8'
        )
        security_handler.setLevel(logging.INFO)

        # Structured logging format for security events
        security_formatter = logging.Formatter(
            '%(asctime)s - SECURITY - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S UTC'
        )
        security_handler.setFormatter(security_formatter)
        self.security_logger.addHandler(security_handler)
        self.security_logger.setLevel(logging.INFO)
        self.security_logger.propagate = False  # Don't propagate to root logger

    def _log_security_event(self, level: str, event_type: str, client_ip: str,
                           endpoint: str = None, user_agent: str = None,
                           details: dict = None, risk_level: str = "LOW"):
        """Internal method to log structured security events"""
        log_data = {
            "event_type": event_type,
            "client_ip": client_ip,
            "endpoint": endpoint,
            "user_agent": user_agent or "unknown",
            "risk_level": risk_level,
            "details": details or {}
        }

        # Convert to JSON for structured logging
        message = json.dumps(log_data, default=str)

        if level.upper() == "ERROR":
            self.security_logger.error(message)
        elif level.upper() == "WARNING":
            self.security_logger.warning(message)
        else:
            self.security_logger.info(message)

    def log_privileged_action(self, client_ip: str, action: str, target: str, success: bool,
                              username: str = None, user_agent: str = None):
        """Log privileged actions (user creation, stack updates)"""
        event_type = f"PRIVILEGED_ACTION_{action.upper()}"
        risk_level = "MEDIUM" if success else "HIGH"

        self._log_security_event(
            level="INFO" if success else "ERROR",
            event_type=event_type,
            client_ip=client_ip,
            user_agent=user_agent,
            details={
                "action": action,
                "target": target,
                "success": success,
                "username": username,
            },
            risk_level=risk_level
        )

    def log_permission_denied(self, client_ip: str, endpoint: str, username: str):
        """Log a non-administrator calling an administrator-only endpoint"""
        self._log_security_event(
            level="WARNING",
            event_type="PERMISSION_DENIED",
            client_ip=client_ip,
            endpoint=endpoint,
            details={"username": username},
            risk_level="MEDIUM"
        )

    def log_login_success(self, client_ip: str, user_agent: str, username: str):
        """Log successful login attempt"""
        self._log_security_event(
            level="INFO",
            event_type="LOGIN_SUCCESS",
            client_ip=client_ip,
            user_agent=user_agent,
            details={"username": username},
            risk_level="LOW"
        )

    def log_login_failure(self, client_ip: str, user_agent: str, reason: str):
        """Log failed login attempt"""
        self._log_security_event(
            level="WARNING",
            event_type="LOGIN_FAILURE",
            client_ip=client_ip,
            user_agent=user_agent,
            details={"reason": reason},
            risk_level="MEDIUM"
        )


# Global instance
security_audit = SecurityAuditLogger()
