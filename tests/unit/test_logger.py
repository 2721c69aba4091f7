"""
Unit tests for logging setup.
"""

import logging

import colorlog
import pytest

from galerie.utils.logger import get_logger, setup_logging


@pytest.fixture
def galerie_root():
    root = logging.getLogger("galerie")
    saved = (root.level, list(root.handlers))
    yield root
    root.setLevel(saved[0])
    root.handlers[:] = saved[1]


class TestLogging:
    """Tests for setup_logging and get_logger."""

    def test_subsystem_names(self):
        assert get_logger("auction").name == "galerie.auction"
        assert get_logger("auction").parent is logging.getLogger("galerie")

    def test_single_colored_handler(self, galerie_root):
        """Repeated setup replaces the handler instead of stacking another."""
        setup_logging(logging.DEBUG)
        setup_logging(logging.WARNING)

        assert galerie_root.level == logging.WARNING
        assert len(galerie_root.handlers) == 1
        assert isinstance(galerie_root.handlers[0].formatter, colorlog.ColoredFormatter)
