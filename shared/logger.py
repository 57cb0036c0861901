"""
Simple logging module for Sketch2Agent.

All services log to console (stdout) with colored, structured output.

Usage:
    from shared.logger import get_logger

    logger = get_logger(__name__)  # Use module name
    logger.info("Build claimed", extra={"workflow_id": workflow_id})
"""

import logging
import sys

# Global cache of loggers
_loggers = {}

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RESERVED_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class ColoredFormatter(logging.Formatter):
    """Formatter that adds colors to console output and renders `extra` context."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'       # Reset
    }

    def format(self, record):
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"
        try:
            message = super().format(record)
        finally:
            record.levelname = levelname

        context = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if context:
            rendered = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
            message = f"{message} | {rendered}"
        return message


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Get a logger that outputs colored, structured logs to console.

    Args:
        name: Logger name (typically __name__ or component name)
        level: Logging level (default: INFO)

    Returns:
        Configured logger instance
    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        ColoredFormatter(
            fmt='%(asctime)s | %(name)s | %(levelname)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    )
    logger.addHandler(console_handler)

    _loggers[name] = logger
    return logger
