"""File logging set-up for the composer."""

from __future__ import annotations

import logging
from pathlib import Path

TRACE = 5
OFF = logging.CRITICAL + 10

logging.addLevelName(TRACE, "TRACE")

_LEVELS = {
    "off": OFF,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}

LOGGER_NAME = "coredump_composer"
LOG_FILE_NAME = "composer.log"


def parse_level(name: str) -> int:
    """Map a level name to a logging level; unknown names give DEBUG."""
    return _LEVELS.get(name.strip().lower(), logging.DEBUG)


def init_logger(log_level: str, log_dir: str | Path) -> str:
    """Send the package's log records to composer.log in ``log_dir``; return its path."""
    log_path = Path(log_dir) / LOG_FILE_NAME
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(levelname)s - %(asctime)s - %(message)s"))

    logger = logging.getLogger(LOGGER_NAME)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    logger.addHandler(handler)
    logger.setLevel(parse_level(log_level))
    logger.propagate = False
    return str(log_path)