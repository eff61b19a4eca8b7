# memoir_voice/utils/logging.py
"""
Small logging helper for scripts and the Celery worker.

Usage:
    from memoir_voice.utils.logging import get_logger
    logger = get_logger("memoir-voice.worker")

This sets a simple console formatter if no handlers are configured.
"""
import logging
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "info") -> None:
    """Root logger setup used by the web app at startup."""
    logging.basicConfig(level=level.upper(), format=DEFAULT_FORMAT)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(name)
    # If root has no handlers, configure a default one (useful in scripts)
    if not logging.getLogger().handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        logging.getLogger().addHandler(handler)

    if level:
        logger.setLevel(level.upper())
    return logger
