"""Logging setup for command-line runs."""

import logging
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

from .config import LogLevel


def configure_logging(
    level: Union[LogLevel, str] = LogLevel.INFO, console: Optional[Console] = None
) -> None:
    """
    Route the ``rx_purge`` loggers through a single rich handler.

    Args:
        level: Logging level name
        console: Console to write to (stderr if omitted)
    """
    if isinstance(level, LogLevel):
        level = level.value

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        log_time_format="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    root = logging.getLogger("rx_purge")
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())
    root.propagate = False
