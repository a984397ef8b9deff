"""
Centralized logging setup and configuration.

Provides structured, colored logging for the renewal control loop.
"""

import logging
import sys
from typing import Optional


class ColoredFormatter(logging.Formatter):
    """
    Formatter that colors the level name (and warning/error messages).

    Colors are only applied when output is to a terminal.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def __init__(self, fmt: str = None, use_colors: bool = True):
        super().__init__(fmt or "%(asctime)s [%(levelname)s] %(message)s")
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        original_levelname = record.levelname
        original_msg = record.msg

        if self.use_colors:
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


class StructuredLogger(logging.Logger):
    """
    Logger with helpers for the sectioned cycle output.
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

    def success(self, message: str) -> None:
        self.info(f"[OK] {message}")

    def failure(self, message: str) -> None:
        self.error(f"[FAIL] {message}")

    def stage(self, domain: str, stage_label: str, message: str, level: int = logging.INFO) -> None:
        """
        Log a per-domain pipeline message.

        Args:
            domain: Domain the message is about
            stage_label: Pipeline stage label (e.g. "publish")
            message: Message text
            level: Log level
        """
        self.log(level, f"  [{domain}] {stage_label}: {message}")


_logger: Optional[StructuredLogger] = None


def setup_logger(
    name: str = "CdnSslRenewal",
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
    logger.propagate = False

    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)

    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(threadName)s %(message)s"
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
