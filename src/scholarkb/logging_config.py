"""Logging configuration for scholarkb.

Library modules only create module-level loggers; handlers are installed here,
by the CLI entry point. LiteLLM's own loggers are quieted unless verbose.
"""

from __future__ import annotations

import logging
import sys

_LIBRARY_LOGGERS: tuple[str, ...] = ("LiteLLM", "LiteLLM Router", "LiteLLM Proxy", "httpx")


def configure_logging(verbose: bool = False) -> logging.Handler:
    """Install a stderr handler on the ``scholarkb`` logger.

    Args:
        verbose: DEBUG-level output (including provider libraries) when True;
            warnings and errors only otherwise.

    Returns:
        The installed handler (reused if already present).
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logger = logging.getLogger("scholarkb")
    logger.setLevel(level)

    handler = next(
        (
            h
            for h in logger.handlers
            if isinstance(h, logging.StreamHandler) and h.stream is sys.stderr
        ),
        None,
    )
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        logger.addHandler(handler)
    handler.setLevel(level)

    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.ERROR)

    return handler
