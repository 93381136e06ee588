"""Logging configuration for speedboard."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def configure_logging(level: str = "INFO", log_file: str = "") -> None:
    """Configure application-wide logging.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL). Unknown
            names fall back to INFO.
        log_file: When set, log lines go to this file instead of stderr.
            The textual dashboard owns the terminal, so it should always be
            given a file.
    """
    log_level = _LEVELS.get(level.strip().upper(), logging.INFO)

    if log_file:
        logging.basicConfig(
            level=log_level,
            format=LOG_FORMAT,
            datefmt=DATE_FORMAT,
            filename=log_file,
            force=True,
        )
    else:
        logging.basicConfig(
            level=log_level,
            format=LOG_FORMAT,
            datefmt=DATE_FORMAT,
            stream=sys.stderr,
            force=True,
        )

    # httpx logs every request at INFO, which would drown the workers' output
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))
    logging.getLogger("httpcore").setLevel(max(log_level, logging.WARNING))

    logger = logging.getLogger(__name__)
    logger.info("Logging configured: level=%s", logging.getLevelName(log_level))
