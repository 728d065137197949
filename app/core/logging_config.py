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

    # Avoid stacking handlers when the app module is imported more than once
    if any(getattr(h, "_keyfleet", False) for h in logger.handlers):
        return

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))
    console_handler._keyfleet = True

    file_handler = RotatingFileHandler(
        log_dir / "keyfleet.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
    ))
    file_handler._keyfleet = True

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    # Per-request connection chatter from urllib3 is noise at INFO
    logging.getLogger("urllib3").setLevel(max(log_level, logging.WARNING))
    logging.getLogger("apscheduler").setLevel(max(log_level, logging.WARNING))
