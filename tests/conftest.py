"""Pytest configuration and fixtures for tether-capture tests.

Every test gets a fresh driver factory and a logging setup writing into an
in-memory stream, so tests never share global state or print to stderr.
"""

import io
import logging

import pytest

from tether_capture.drivers import config as driver_config
from tether_capture.observability import configure_logging, reset_logging
from tests.helpers import FakeClock, RecordingDiagnostics


@pytest.fixture(autouse=True)
def _isolate_globals():
    """Reset the driver factory singleton and package logging around a test.

    Yields:
        io.StringIO receiving DEBUG-level package logs.
    """
    driver_config._factory = None
    stream = io.StringIO()
    configure_logging(level=logging.DEBUG, stream=stream, force=True)
    yield stream
    reset_logging()
    driver_config._factory = None


@pytest.fixture
def log_stream(_isolate_globals) -> io.StringIO:
    """Captured package log output for the current test."""
    return _isolate_globals


@pytest.fixture
def diagnostics() -> RecordingDiagnostics:
    return RecordingDiagnostics()


@pytest.fixture
def fake_clock() -> FakeClock:
    """FakeClock that never cancels on its own."""
    return FakeClock()
