"""Logging configuration for CivicEase.

Provides centralized logging setup with Rich console formatting
and optional file logging.

Example:
    >>> from civicease.utils.logging import setup_logging, log_context
    >>> setup_logging(level="DEBUG")
    >>> with log_context("Analyzing notice.png"):
    ...     # do work
    ... # Logs: "Analyzing notice.png completed in 4.21s"
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from rich.console import Console
from rich.logging import RichHandler


# =============================================================================
# Constants
# =============================================================================

PACKAGE_NAME = "civicease"

NOISY_LOGGERS = [
    "google",
    "google.auth",
    "google.api_core",
    "google.generativeai",
    "urllib3",
    "httpx",
    "httpcore",
    "grpc",
    "PIL",
    "asyncio",
    "keyring",
]

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_console = Console(stderr=True)


# =============================================================================
# Setup
# =============================================================================


def setup_logging(
    level: str = "WARNING",
    log_file: Path | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Configure logging for the civicease package.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path to log file.
        quiet_third_party: If True, suppress noisy third-party loggers.
    """
    numeric_level = getattr(logging, level.upper(), logging.WARNING)

    root_logger = logging.getLogger(PACKAGE_NAME)
    root_logger.setLevel(numeric_level)
    root_logger.handlers = []

    console_handler = RichHandler(
        console=_console,
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_show_locals=numeric_level == logging.DEBUG,
        markup=False,
    )
    console_handler.setLevel(numeric_level)
    root_logger.addHandler(console_handler)

    if log_file:
        add_file_handler(log_file)

    if quiet_third_party:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    root_logger.propagate = False
    root_logger.debug(f"Logging configured: level={level}, file={log_file}")


def add_file_handler(log_file: Path) -> None:
    """Add a file handler to the package logger."""
    logger = logging.getLogger(PACKAGE_NAME)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logger.level)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
    logger.addHandler(file_handler)


# =============================================================================
# Log Context Manager
# =============================================================================


class LogContext:
    """Context manager for timing and logging operations.

    Attributes:
        message: Description of the operation.
        level: Log level for messages.
        logger: Logger instance to use.
        elapsed: Elapsed time in seconds (after exit).
    """

    def __init__(
        self,
        message: str,
        level: int = logging.INFO,
        logger: logging.Logger | None = None,
    ) -> None:
        self.message = message
        self.level = level
        self.logger = logger or logging.getLogger(PACKAGE_NAME)
        self.elapsed: float = 0.0
        self._start_time: float = 0.0

    def __enter__(self) -> "LogContext":
        self._start_time = time.perf_counter()
        self.logger.log(self.level, f"{self.message}...")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.elapsed = time.perf_counter() - self._start_time

        if exc_type is not None:
            self.logger.warning(f"{self.message} failed after {self.elapsed:.2f}s: {exc_val}")
        else:
            self.logger.log(self.level, f"{self.message} completed in {self.elapsed:.2f}s")


@contextmanager
def log_context(
    message: str,
    level: int = logging.INFO,
    logger: logging.Logger | None = None,
) -> Generator[LogContext, None, None]:
    """Functional form of LogContext.

    Example:
        >>> with log_context("Sending chat turn") as ctx:
        ...     pass
        >>> print(f"Took {ctx.elapsed:.2f}s")
    """
    ctx = LogContext(message, level, logger)
    with ctx:
        yield ctx
