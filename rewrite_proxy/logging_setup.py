import logging
import os
from typing import Optional

LOGGER_NAME = "uvicorn.error"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(message)s"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def resolve_level(level: str) -> int:
    return _LEVELS.get((level or "info").lower(), logging.INFO)


def configure_logging(
    level: str = "info", file: Optional[str] = None
) -> logging.Logger:
    """
    Set up the shared ``uvicorn.error`` logger.

    A console handler is added when none exists yet; ``file`` adds a
    ``FileHandler`` next to it, creating the directory if needed.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(resolve_level(level))
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(
        type(handler) is logging.StreamHandler for handler in logger.handlers
    ):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    if file:
        path = os.path.abspath(file)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not any(
            isinstance(handler, logging.FileHandler) and handler.baseFilename == path
            for handler in logger.handlers
        ):
            file_handler = logging.FileHandler(path, encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger
