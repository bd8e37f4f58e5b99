"""Logging configuration for Matchday.

Application loggers follow the configured level; chatty third-party
libraries are held at WARNING.
"""

import logging
import sys
from typing import Literal

from matchday.settings import get_settings

NOISY_LOGGERS = [
    "alembic",
    "alembic.runtime.migration",
    "apscheduler",
    "apscheduler.scheduler",
    "apscheduler.executors.default",
    "httpcore",
    "httpx",
    "asyncio",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
]

NOISY_LOGGER_LEVELS = {
    "sqlalchemy.engine": logging.ERROR,
}


def suppress_noisy_loggers() -> None:
    """Suppress noisy third-party loggers."""
    for logger_name in NOISY_LOGGERS:
        logger = logging.getLogger(logger_name)
        logger.setLevel(NOISY_LOGGER_LEVELS.get(logger_name, logging.WARNING))
        logger.handlers.clear()


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
) -> None:
    """Configure application logging.

    Args:
        level: Override log level (defaults to settings.log_level)
    """
    log_level = level or get_settings().log_level

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, log_level))
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s | %(name)s | %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root_logger.addHandler(console_handler)

    logging.getLogger("matchday").setLevel(getattr(logging, log_level))

    suppress_noisy_loggers()
