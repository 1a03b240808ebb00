"""Logging configuration helpers for the governance tools."""

import logging
import os

# Driver chatter drowns out findings at INFO
_QUIET_LOGGERS = ("psycopg", "psycopg.pool")


def _resolve_level(level_name: str) -> int:
    return getattr(logging, level_name.upper(), logging.INFO)


def configure_logging(tool: str = "-", verbose: bool = False) -> None:
    """Configure root logging to stderr using LOG_LEVEL and a concise format.

    ``verbose`` forces DEBUG regardless of LOG_LEVEL.
    """
    level = logging.DEBUG if verbose else _resolve_level(os.getenv("LOG_LEVEL", "INFO"))
    formatter = _build_formatter(tool)
    root_logger = logging.getLogger()

    if root_logger.handlers:
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.setLevel(level)
            handler.setFormatter(formatter)
    else:
        logging.basicConfig(level=level)
        for handler in logging.getLogger().handlers:
            handler.setFormatter(formatter)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def _build_formatter(tool: str) -> logging.Formatter:
    pattern = "%(asctime)s %(levelname)s tool=%(tool)s %(name)s %(message)s"
    return logging.Formatter(pattern, defaults={"tool": tool})
