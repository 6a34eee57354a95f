"""Logging utilities for hatch-ports."""

import logging
import sys
from pathlib import Path

PACKAGE_LOGGER = "hatchports"

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logger(
    name: str, log_file: Path | None = None, level: int | None = None
) -> logging.Logger:
    """Set up a logger with console and optional file handlers.

    Console output goes to stderr; stdout belongs to command output and to
    the MCP stdio transport.

    Args:
        name: Logger name
        log_file: Optional file path for file logging
        level: Logging level, or None to follow the package level

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    else:
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        if package_logger.level == logging.NOTSET:
            package_logger.setLevel(logging.INFO)

    # Avoid adding duplicate handlers
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.NOTSET)
    console_handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(file_handler)

    return logger


def set_package_level(level: int) -> None:
    """Apply a logging level to the hatch-ports package logger.

    Module loggers created later inherit it. Loggers that were given an
    explicit level are updated too.

    Args:
        level: Logging level
    """
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)
    for name, logger in logging.Logger.manager.loggerDict.items():
        if not isinstance(logger, logging.Logger) or not name.startswith(PACKAGE_LOGGER + "."):
            continue
        if logger.level != logging.NOTSET:
            logger.setLevel(level)
