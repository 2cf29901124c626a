"""
Configuration Management for Stackyard
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler


class HealthCheckFilter(logging.Filter):
    """Filter out health check requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()

        # For uvicorn access logs, the message format is:
        # 'IP:PORT - "METHOD /path HTTP/1.1" STATUS'
        if '200' in message and '/health' in message:
            return False
        return True


def setup_logging():
    """Configure application logging with rotation"""
    from .paths import DATA_DIR

    # Create logs directory with secure permissions
    log_dir = os.path.join(DATA_DIR, 'logs')
    os.makedirs(log_dir, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers to ensure our logging
    # configuration is used and prevent file descriptor leaks
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    level = getattr(logging, AppConfig.LOG_LEVEL.upper(), logging.INFO)
    root_logger.setLevel(level)

    # Console handler for stdout
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler with rotation for application logs
    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'stackyard.log'),
        maxBytes=10*1024*1024,  # 10MB
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Suppress noisy Uvicorn access logs for health checks
    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())

    # The kubernetes client logs every request body at DEBUG
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


class AppConfig:
    """Main application configuration"""

    # Server settings
    HOST = os.getenv('STACKYARD_HOST', '0.0.0.0')
    PORT = int(os.getenv('STACKYARD_PORT', 9000))

    # Import centralized paths
    from .paths import DATABASE_URL as DEFAULT_DATABASE_URL

    # Database settings
    DATABASE_URL = os.getenv('STACKYARD_DATABASE_URL', DEFAULT_DATABASE_URL)

    # Comma-separated allowed origins; empty allows any origin (auth still required)
    CORS_ORIGINS = os.getenv('STACKYARD_CORS_ORIGINS', '')

    # Logging
    LOG_LEVEL = os.getenv('STACKYARD_LOG_LEVEL', 'INFO')

    # Authentication
    SESSION_TIMEOUT_HOURS = int(os.getenv('STACKYARD_SESSION_TIMEOUT_HOURS', 8))

    # Git transport timeout (seconds) for ls-remote probes and clones
    GIT_TIMEOUT_SECONDS = int(os.getenv('STACKYARD_GIT_TIMEOUT_SECONDS', 60))

    # Field manager reported to the Kubernetes API on create/patch
    KUBE_FIELD_MANAGER = os.getenv('STACKYARD_KUBE_FIELD_MANAGER', 'stackyard')

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.PORT < 1 or cls.PORT > 65535:
            raise ValueError(f"Invalid port: {cls.PORT}")

        if cls.SESSION_TIMEOUT_HOURS < 1:
            raise ValueError(f"Session timeout must be at least 1 hour: {cls.SESSION_TIMEOUT_HOURS}")

        if cls.GIT_TIMEOUT_SECONDS < 1:
            raise ValueError(f"Git timeout must be at least 1 second: {cls.GIT_TIMEOUT_SECONDS}")

        return True
