"""Structured logging configuration.

Every module logs through a child of the ``arena`` logger, which owns the
single stdout handler and the level taken from ``LOG_LEVEL``.
"""
import logging
import sys
from typing import Optional

from arena.config import config

ROOT_LOGGER = "arena"


def _root_logger() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        root.addHandler(handler)
        root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
        # uvicorn installs its own root handlers
        root.propagate = False
    return root


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a logger under the ``arena`` hierarchy.

    Args:
        name: Logger name, typically __name__ of the calling module. Names
            outside the package are nested under it.

    Returns:
        Configured logger instance.
    """
    root = _root_logger()
    if not name or name == ROOT_LOGGER:
        return root
    if not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
