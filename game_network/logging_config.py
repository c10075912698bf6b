"""Logging configuration for game network plugins."""

import logging
import os
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s"
LOG_LEVEL_ENV = "GAME_NET_LOG_LEVEL"

NOISY_LOGGERS = ("urllib3", "kubernetes")


def setup_logging(
    level: str | None = None, log_file: Path | None = None, verbose: bool = False
) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL). Falls back to
            the GAME_NET_LOG_LEVEL environment variable, then INFO.
        log_file: Optional path to log file
        verbose: If True, set level to DEBUG
    """
    if verbose:
        level = "DEBUG"
    level = (level or os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    if not isinstance(getattr(logging, level, None), int):
        level = "INFO"

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers.clear()

    # Console shows warnings unless verbose
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            logging.warning(f"Failed to create log file handler for {log_file}: {e}")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
