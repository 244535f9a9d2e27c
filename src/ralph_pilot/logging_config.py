"""Logging setup for ralph-pilot.

The loop runs unattended for long stretches, so diagnostics go to stderr
(and optionally a DEBUG-level file) while stdout stays reserved for the
run summary printed through :mod:`ralph_pilot.output`.

Usage:
    >>> setup_logging(verbose=True)
    >>> logger = logging.getLogger(__name__)
    >>> logger.info("iteration %d started", 1)
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

# Libraries that log request-level chatter at INFO.
_NOISY_LOGGERS = (
    "urllib3",
    "httpx",
    "httpcore",
    "anthropic",
    "asyncio",
    "PIL",
)


def setup_logging(
    verbose: bool = False,
    log_file: Optional[Path] = None,
    quiet: bool = False,
) -> logging.Logger:
    """Configure the root logger.

    Args:
        verbose: DEBUG level instead of INFO
        log_file: Optional path that receives every record at DEBUG level
        quiet: Only errors reach the console

    Returns:
        The configured root logger
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )
    handlers.append(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s:%(funcName)s:%(lineno)d: %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    # The file handler wants DEBUG even when the console does not.
    root_logger.setLevel(logging.DEBUG if log_file else level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger

