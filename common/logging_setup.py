"""Centralized logging configuration for the CLI and the server."""
from __future__ import annotations

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", rich_console: bool = True) -> None:
    """
    Install exactly one root handler.

    Rich output goes to stderr so ``--json`` mode keeps stdout clean; the plain
    formatter is used when the output is piped or consumed by other tools.
    """
    if rich_console:
        handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s", datefmt=DATE_FORMAT))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)

    root_logger.addHandler(handler)
    # aiohttp's access log is noisy at INFO for bulk transfers.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
