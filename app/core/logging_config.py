"""
Logging configuration.
"""
import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

from app.core.config import settings


def setup_logging():
    """Configure application logging."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(log_level)

    # Repeated imports (tests, reloaders) must not stack duplicate handlers
    if getattr(logger, "_rot_keys_configured", False):
        return

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )

    file_handler = RotatingFileHandler(
        log_dir / "rot_keys.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
        )
    )

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    logger._rot_keys_configured = True


def key_hint(key: str) -> str:
    """Shorten a key for log output so full credentials never reach the logs."""
    if not isinstance(key, str):
        return "<non-string>"
    return f"{key[:8]}..." if len(key) > 8 else "***"
