"""Loguru sink setup for the agent process."""

import sys

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <7}</level> | "
    "{message}"
)


def configure_logging(debug: bool = False) -> int:
    """Replace the default sink with a single stderr sink.

    Returns the sink id so callers (tests) can remove it again.
    """
    logger.remove()
    return logger.add(
        sys.stderr,
        level="DEBUG" if debug else "INFO",
        format=_FORMAT,
        backtrace=debug,
        diagnose=False,
    )
