"""
Converge Logging

Maps the -v count of the command line tools to standard logging levels.
"""

import logging
import sys
from typing import Optional, TextIO

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
    3: TRACE,
}

LOG_FORMAT = "%(levelname)s %(name)s - %(message)s"


def level_for(verbosity: int) -> int:
    """Logging level for a -v count; anything past -vvv is TRACE."""
    return LEVELS.get(max(0, min(verbosity, 3)), TRACE)


def configure_logging(verbosity: int = 0, stream: Optional[TextIO] = None) -> int:
    """
    Configure the 'converge' logger hierarchy.

    Args:
        verbosity: -v count (0 WARNING, 1 INFO, 2 DEBUG, 3 TRACE)
        stream: Where log records go (default: stderr)

    Returns:
        The level that was set
    """
    level = level_for(verbosity)
    logger = logging.getLogger("converge")

    for handler in list(logger.handlers):
        if getattr(handler, '_converge_handler', False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._converge_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return level
