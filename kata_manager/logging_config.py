"""Logging configuration for kata manager.

Operator-facing progress goes through :class:`kata_manager.reporting.Reporter`;
the log records the same lines plus the debug detail behind them (SSH
targets, kubectl invocations, API errors).
"""

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
QUIET_LIBRARIES = ("urllib3", "kubernetes", "paramiko")


def setup_logging(log_file: Path | None = None, verbose: bool = False) -> None:
    """Configure logging for the CLI.

    Args:
        log_file: Optional path to a log file that receives everything at DEBUG
        verbose: If True, also show DEBUG records on stderr
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if verbose or log_file else logging.INFO)
    root_logger.handlers.clear()

    # stderr stays quiet unless asked; the Reporter already prints progress
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            logging.warning(f"Failed to open log file {log_file}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

    for name in QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically for ``__name__``)."""
    return logging.getLogger(name)
