"""
Tests for verbosity to log level mapping.
"""

import io
import logging

import pytest

from converge.logging import TRACE, configure_logging, level_for


class TestLogging:

    @pytest.mark.parametrize("verbosity,level", [
        (0, logging.WARNING),
        (1, logging.INFO),
        (2, logging.DEBUG),
        (3, TRACE),
        (7, TRACE),
        (-1, logging.WARNING),
    ])
    def test_level_for(self, verbosity, level):
        """Each -v raises the detail by one level."""
        assert level_for(verbosity) == level

    def test_configure_logging(self):
        """Records from converge loggers reach the given stream."""
        stream = io.StringIO()
        configure_logging(1, stream=stream)

        logging.getLogger("converge.engine.runner").info("starting run")
        logging.getLogger("converge.engine.runner").debug("hidden")

        output = stream.getvalue()
        assert "INFO converge.engine.runner - starting run" in output
        assert "hidden" not in output

    def test_reconfigure_replaces_handler(self):
        """Calling configure_logging twice does not duplicate output."""
        first = io.StringIO()
        second = io.StringIO()
        configure_logging(0, stream=first)
        configure_logging(0, stream=second)

        logging.getLogger("converge").warning("once")

        assert first.getvalue() == ""
        assert second.getvalue().count("once") == 1
