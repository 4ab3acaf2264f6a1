"""Logging configuration for conceptkb."""

from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool = False) -> logging.Handler:
    """Attach a stderr handler to the ``conceptkb`` logger.

    HTTP client libraries are held at WARNING so request lines don't drown
    out reconciliation progress. Calling this twice replaces the handler.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger("conceptkb")
    for h in list(logger.handlers):
        if getattr(h, "_conceptkb", False):
            logger.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%H:%M:%S"))
    handler._conceptkb = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(level)

    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)
    return handler
