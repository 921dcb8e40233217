"""Logging setup for the CLI."""

import logging
import os

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(debug: bool = False) -> None:
    """Route agentfleet logs through a rich handler on stderr.

    The level comes from ``--debug`` first, then AGENTFLEET_LOG_LEVEL,
    then WARNING.

    Args:
        debug: Force DEBUG level.
    """
    if debug:
        level = logging.DEBUG
    else:
        level = logging.getLevelName(os.environ.get("AGENTFLEET_LOG_LEVEL", "WARNING").upper())
        # Reason: getLevelName returns a string for unknown names.
        if not isinstance(level, int):
            level = logging.WARNING

    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger = logging.getLogger("agentfleet")
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    # Reason: asyncssh logs every channel at INFO, which drowns fleet output.
    logging.getLogger("asyncssh").setLevel(logging.DEBUG if debug else logging.WARNING)
