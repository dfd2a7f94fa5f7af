"""Logging helpers.

The router and adapters take an injected logger. `setup_logging` is only
called by the CLI entry point; library code never configures handlers.
"""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
DATE_FORMAT = "%H:%M:%S"


def setup_logging(level: str | int = "INFO") -> None:
    """Configure root logging for the CLI process."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT)

    # Chatty SDK loggers
    for name in ("httpx", "httpcore", "telegram.ext", "discord.gateway", "werkzeug"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def silent_logger(name: str) -> logging.Logger:
    """Build a detached logger that drops every record.

    The logger is not registered with the logging manager, so disabling
    output for one component never affects another one with the same name.
    """
    logger = logging.Logger(name, level=logging.CRITICAL + 1)
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def component_logger(
    name: str,
    logger: logging.Logger | None = None,
    enabled: bool = True,
) -> logging.Logger:
    """Resolve the logger a router or adapter should use."""
    if not enabled:
        return silent_logger(name)
    return logger or logging.getLogger(name)
