"""Centralized logging configuration."""

import logging
import sys

from app.config import get_settings


def setup_logging() -> logging.Logger:
    """Configure and return the application logger."""
    level = get_settings().LOG_LEVEL.upper()

    logger = logging.getLogger("mediconnect")
    logger.setLevel(getattr(logging, level, logging.INFO))

    if not logger.handlers:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, level, logging.INFO))
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    logger.debug("Logging configured with level: %s", level)
    return logger


logger = setup_logging()
