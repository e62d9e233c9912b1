# =============================================
# File: cuppa/utils/logging.py
# Purpose: Logging configuration
# =============================================
from __future__ import annotations
import os
import sys

from loguru import logger

_configured = False


def configure_logging() -> None:
    """Install loguru sinks once: stderr at LOG_LEVEL, plus a rotating file when LOG_FILE is set."""
    global _configured
    if _configured:
        return
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logger.remove()
    logger.add(sys.stderr, level=level)
    log_file = os.getenv("LOG_FILE")
    if log_file:
        logger.add(log_file, rotation="10 MB", level=level)
    _configured = True
