"""
Logging configuration for applications embedding the retrieval core.

Library modules only create module-level loggers; handlers are attached here,
on request, so importing ``kgrag`` never reconfigures the host's logging.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from kgrag import config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_NAME = "kgrag.log"

_configured = False


def configure_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> logging.Logger:
    """
    Attach console (and optionally rotating file) handlers to the ``kgrag`` logger.

    Args:
        level: Log level name, defaults to config.LOG_LEVEL
        log_dir: Directory for the rotating log file. The file handler is only
            added when ENABLE_DETAILED_LOGGING is set or a directory is given.

    Returns:
        The configured package logger. Repeated calls only adjust the level.
    """
    global _configured

    logger = logging.getLogger("kgrag")
    logger.setLevel(getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO))

    if _configured:
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_dir or config.ENABLE_DETAILED_LOGGING:
        target_dir = log_dir or config.LOG_DIR
        os.makedirs(target_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(target_dir, LOG_FILE_NAME),
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    _configured = True
    return logger
