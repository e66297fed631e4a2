"""
Centralized logging setup and configuration.

Provides colored console logging and an optional plain-text log file for
the CDN certificate renewal run.
"""

import logging
import re
import sys
from typing import Optional


class ColoredFormatter(logging.Formatter):
    """
    Formatter that colors the level name, and the message for warnings
    and errors.

    Colors are only applied when output is to a terminal.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, fmt: str = None, use_colors: bool = True):
        """
        Initialize the formatter.

        Args:
            fmt: Log message format string
            use_colors: Whether to use colors in output
        """
        super().__init__(fmt or "%(asctime)s [%(levelname)s] %(message)s")
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors:
            return super().format(record)

        original_levelname = record.levelname
        original_msg = record.msg

        color = self.COLORS.get(record.levelname, "")
        reset = self.COLORS["RESET"]
        record.levelname = f"{color}{record.levelname}{reset}"
        if original_levelname in ("WARNING", "ERROR", "CRITICAL"):
            record.msg = f"{color}{record.msg}{reset}"

        try:
            return super().format(record)
        finally:
            record.levelname = original_levelname
            record.msg = original_msg


class RedactingFilter(logging.Filter):
    """Masks bearer tokens that end up in log messages."""

    _BEARER = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+")

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str) and "Bearer" in record.msg:
            record.msg = self._BEARER.sub(r"\1<REDACTED>", record.msg)
        return True


class StructuredLogger(logging.Logger):
    """
    Logger with helpers for the sectioned output of a renewal run.
    """

    def section(self, title: str) -> None:
        """
        Log a section header.

        Args:
            title: Section title
        """
        self.info("")
        self.info("=" * 60)
        self.info(title)
        self.info("=" * 60)

    def subsection(self, title: str) -> None:
        """Log a subsection header."""
        self.info("")
        self.info(f"--- {title} ---")

    def step(self, endpoint_id: str, step: str, message: str) -> None:
        """Log progress of one orchestration step for an endpoint."""
        self.info(f"  [{endpoint_id}] {step}: {message}")

    def success(self, message: str) -> None:
        self.info(f"[OK] {message}")

    def failure(self, message: str) -> None:
        self.error(f"[FAIL] {message}")


_logger: Optional[StructuredLogger] = None


def setup_logger(
    name: str = "CdnCertRenewal",
    verbose: bool = False,
    use_colors: bool = True,
    log_file: Optional[str] = None,
) -> StructuredLogger:
    """
    Setup and configure the global logger.

    Args:
        name: Logger name
        verbose: Enable debug-level logging
        use_colors: Enable colored output
        log_file: Optional file path for log output

    Returns:
        Configured StructuredLogger instance
    """
    global _logger

    logging.setLoggerClass(StructuredLogger)
    logger = logging.getLogger(name)
    logger.__class__ = StructuredLogger
    logging.setLoggerClass(logging.Logger)

    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.filters.clear()
    logger.addFilter(RedactingFilter())

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s"
        ))
        logger.addHandler(file_handler)

    _logger = logger
    return logger


def get_logger() -> StructuredLogger:
    """
    Get the global logger instance, creating a default one on first use.

    Returns:
        The configured StructuredLogger instance
    """
    global _logger

    if _logger is None:
        _logger = setup_logger()

    return _logger
