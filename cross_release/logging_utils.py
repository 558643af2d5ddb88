"""Logging setup for CLI runs."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: str = "INFO", console: Console | None = None) -> logging.Logger:
    """Configure the cross_release logger with a rich console handler.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR).
        console: Optional console to log to (defaults to stderr).

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger("cross_release")
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers = []

    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_time=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.propagate = False

    return logger


__all__ = ["setup_logging"]
