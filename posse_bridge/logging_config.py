"""Root logger setup shared by the CLI and the HTTP app."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str | int = "INFO") -> None:
    """Send posse_bridge logs to stderr in the pipe-separated format.

    Safe to call more than once; the handler is only installed the first time.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("posse_bridge")
    logger.setLevel(level)
    if not any(getattr(h, "_posse_bridge", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        handler._posse_bridge = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
