# chatsync/core/logging.py

import logging
import os
import sys
from typing import Optional, TextIO

DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Third-party loggers and the level they are capped at
NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "redis": logging.WARNING,
    "jose": logging.WARNING,
    "uvicorn": logging.INFO,
    "uvicorn.error": logging.INFO,
    "uvicorn.access": logging.WARNING,
}


def setup_logging(level: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    """
    Configure application-wide logging.

    - Level comes from ``level``, else LOG_LEVEL, else INFO
    - Format comes from LOG_FORMAT (default: DEFAULT_FORMAT)
    - Logs go to stdout unless another stream is given
    - Store, HTTP client and access logs are capped (see NOISY_LOGGERS)
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Uvicorn (or pytest) may have configured handlers already
    if not root_logger.handlers:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(logging.Formatter(os.getenv("LOG_FORMAT", DEFAULT_FORMAT)))
        root_logger.addHandler(handler)

    for name, cap in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(cap, log_level))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Usage:
        from chatsync.core.logging import get_logger

        logger = get_logger(__name__)
    """
    return logging.getLogger(name)
