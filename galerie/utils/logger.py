"""
Logging setup for Galerie.

Every subsystem (ledger, store, assembler, bids, auction) logs under the
``galerie`` namespace; the CLI attaches one colored stderr handler to it.
"""

import logging
import sys

import colorlog

_ROOT = "galerie"


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Attach the colored console handler to the galerie logger tree."""
    root_logger = logging.getLogger(_ROOT)
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = colorlog.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s [%(name)s] %(levelname)-8s%(reset)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
            },
        )
    )
    root_logger.addHandler(handler)
    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get the logger for one subsystem, e.g. ``get_logger("auction")``."""
    return logging.getLogger(f"{_ROOT}.{name}")
