"""Logging configuration for the proxy server.

This module provides centralized logging configuration using Loguru.
It sets up logging to the console and, optionally, to a rotating file.
Session log lines carry the session number through ``logger.bind(session=...)``;
records logged outside a session show ``-`` instead.
"""

import sys
from pathlib import Path

from loguru import logger

# Default log directory in user's home directory
LOG_DIR = Path.home() / ".socks-relay" / "logs"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[session]: >5}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | "
    "{level: <8} | "
    "{extra[session]: >5} | "
    "{name}:{function}:{line} - "
    "{message}"
)


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    *,
    serialize: bool = False,
) -> None:
    """Replace loguru's default sink with the proxy's sinks.

    Args:
        level: Minimum level for the console sink
        log_file: Also write DEBUG and above to this file, rotated at 10 MB
        serialize: Emit JSON records on the console instead of formatted text
    """
    logger.remove()
    logger.configure(extra={"session": "-"})

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=level.upper(),
        serialize=serialize,
        backtrace=True,
        diagnose=False,
    )

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            rotation="10 MB",
            retention="1 week",
            compression="zip",
            format=FILE_FORMAT,
            level="DEBUG",
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )


__all__ = ["LOG_DIR", "logger", "setup_logging"]
