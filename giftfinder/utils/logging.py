# =============================================
# File: giftfinder/utils/logging.py
# Purpose: Logging configuration
# =============================================
import os

from loguru import logger

_configured = False


def configure_logging(log_file: str | None = None, level: str | None = None) -> None:
    """Add the rotating file sink once per process. LOG_FILE="" disables it."""
    global _configured
    if _configured:
        return
    path = log_file if log_file is not None else os.getenv("LOG_FILE", "logs/giftfinder.log")
    lvl = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if path:
        logger.add(path, rotation="10 MB", level=lvl)
    _configured = True
