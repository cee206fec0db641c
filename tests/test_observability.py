"""Tests for the observability module (logging, diagnostics and statistics)."""

import io
import json
import logging
import sys
import threading
from datetime import datetime

import pytest

from tether_capture.observability import Diagnostics, LoggerDiagnostics
from tether_capture.observability import logging as log_module
from tether_capture.observability.logging import (
    JSONFormatter,
    LogContext,
    StructuredFormatter,
    StructuredLogger,
    StructuredLogRecord,
    _format_value,
    _log_context,
    configure_logging,
    get_logger,
    reset_logging,
)
from tether_capture.observability.stats import (
    StatsSummary,
    TetherStats,
    _percentile,
)


def _record(msg: str = "Test", **structured) -> StructuredLogRecord:
    return StructuredLogRecord(
        name="tether_capture.test",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
        structured_data=structured,
    )


# =============================================================================
# Structured Logging Tests
# =============================================================================


class TestStructuredLogRecord:
    """Tests for StructuredLogRecord."""

    def test_basic_creation(self):
        """Verifies StructuredLogRecord stores structured data dict.

        Arrangement:
        1. StructuredLogRecord with structured_data kwarg.
        2. Record inherits from logging.LogRecord.

        Assertion Strategy:
        Validates record creation by confirming:
        - structured_data equals the dict passed in.
        - Standard LogRecord fields preserved (name, level).
        """
        record = _record(key="value")
        assert record.structured_data == {"key": "value"}
        assert record.name == "tether_capture.test"
        assert record.levelno == logging.INFO

    def test_without_structured_data(self):
        record = StructuredLogRecord(
            name="test",
            level=logging.INFO,
            pathname="test.py",
            lineno=1,
            msg="Test",
            args=(),
            exc_info=None,
        )
        assert record.structured_data == {}


class TestStructuredFormatter:
    def test_format_with_structured_data(self):
        formatter = StructuredFormatter(fmt="%(levelname)s %(message)s")
        output = formatter.format(_record("Saved photo", file="0.jpg", size=3))
        assert output == "INFO Saved photo | file=0.jpg size=3"

    def test_format_without_structured_data(self):
        formatter = StructuredFormatter(fmt="%(message)s")
        assert formatter.format(_record("Plain")) == "Plain"

    def test_include_structured_false(self):
        formatter = StructuredFormatter(fmt="%(message)s", include_structured=False)
        assert formatter.format(_record("Msg", a=1)) == "Msg"

    def test_default_format_has_logger_name(self):
        output = StructuredFormatter().format(_record("Hello"))
        assert " - tether_capture.test - INFO - Hello" in output


class TestJSONFormatter:
    def test_json_with_structured_data(self):
        """Verifies structured fields land at the top level of the JSON object.

        Assertion Strategy:
        - Standard keys present (timestamp, level, logger, message).
        - Structured fields merged alongside them.
        - Timestamp parses as ISO 8601.
        """
        output = JSONFormatter().format(
            _record("downloaded and saved photo", duration_ms=12.5)
        )
        data = json.loads(output)

        assert data["message"] == "downloaded and saved photo"
        assert data["level"] == "INFO"
        assert data["logger"] == "tether_capture.test"
        assert data["duration_ms"] == 12.5
        datetime.fromisoformat(data["timestamp"])

    def test_json_with_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            exc_info = sys.exc_info()
        record = StructuredLogRecord(
            "t", logging.ERROR, "x.py", 1, "Failed", (), exc_info
        )

        data = json.loads(JSONFormatter().format(record))

        assert "ValueError: boom" in data["exception"]

    def test_non_serializable_values_use_str(self):
        data = json.loads(JSONFormatter().format(_record("m", path=object())))
        assert data["path"].startswith("<object object")


class TestFormatValue:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, "null"),
            ("image/jpeg", "image/jpeg"),
            ("no device", '"no device"'),
            (42, "42"),
            (1.5, "1.5"),
            ({"a": 1}, '{"a": 1}'),
            ([1, 2], "[1, 2]"),
        ],
    )
    def test_values(self, value, expected):
        assert _format_value(value) == expected


class TestLogContext:
    def test_context_sets_and_restores(self):
        assert _log_context.get() == {}
        with LogContext(session=1):
            assert _log_context.get() == {"session": 1}
        assert _log_context.get() == {}

    def test_nested_contexts_merge(self):
        with LogContext(session=1, mode="twin"):
            with LogContext(session=2):
                assert _log_context.get() == {"session": 2, "mode": "twin"}
            assert _log_context.get() == {"session": 1, "mode": "twin"}


class TestStructuredLogger:
    @pytest.fixture
    def logger_and_stream(self):
        """StructuredLogger writing to a StringIO through StructuredFormatter."""
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(StructuredFormatter(fmt="%(message)s"))

        logger = StructuredLogger("test_logger")
        logger.setLevel(logging.DEBUG)
        logger.addHandler(handler)
        logger.propagate = False

        yield logger, stream

        logger.handlers.clear()

    def test_structured_kwargs(self, logger_and_stream):
        logger, stream = logger_and_stream
        logger.info("Saved", file="0.jpg", size=10)
        assert stream.getvalue().strip() == "Saved | file=0.jpg size=10"

    def test_kwargs_override_context(self, logger_and_stream):
        logger, stream = logger_and_stream
        with LogContext(session=1, mode="hardware"):
            logger.warning("Retry", session=2)
        assert "session=2 mode=hardware" in stream.getvalue()

    def test_log_method_accepts_fields(self, logger_and_stream):
        """Logger.log(level, msg, **fields) goes through the same path."""
        logger, stream = logger_and_stream
        logger.log(logging.ERROR, "Failed", code=-7)
        assert "Failed | code=-7" in stream.getvalue()

    def test_percent_args_still_work(self, logger_and_stream):
        logger, stream = logger_and_stream
        logger.debug("Frame %d", 3)
        assert "Frame 3" in stream.getvalue()


class TestConfigureLogging:
    def test_get_logger_returns_structured_logger(self):
        assert isinstance(get_logger("tether_capture.tests.x"), StructuredLogger)

    def test_configure_is_idempotent_without_force(self):
        stream_a, stream_b = io.StringIO(), io.StringIO()
        configure_logging(stream=stream_a, force=True)
        configure_logging(stream=stream_b)

        get_logger("tether_capture.tests").warning("hello")

        assert "hello" in stream_a.getvalue()
        assert stream_b.getvalue() == ""

    def test_string_level_and_json(self):
        stream = io.StringIO()
        configure_logging(level="warning", json_format=True, stream=stream, force=True)

        logger = get_logger("tether_capture.tests")
        logger.info("hidden")
        logger.warning("shown", failure="open_failed")

        lines = stream.getvalue().strip().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["failure"] == "open_failed"

    def test_reset_removes_handlers(self):
        configure_logging(force=True)
        root = logging.getLogger("tether_capture")
        assert root.handlers

        reset_logging()

        assert root.handlers == []
        assert log_module._configured is False

    def test_package_logger_does_not_propagate(self):
        configure_logging(force=True)
        assert logging.getLogger("tether_capture").propagate is False


# =============================================================================
# Diagnostics Tests
# =============================================================================


class TestLoggerDiagnostics:
    def test_implements_protocol(self):
        assert isinstance(LoggerDiagnostics(), Diagnostics)

    def test_record_event_logs_fields(self, log_stream):
        diagnostics = LoggerDiagnostics()
        diagnostics.record_event(
            logging.WARNING, "camera tether failed", failure="init_failed", code=-53
        )

        output = log_stream.getvalue()
        assert "tether_capture.devices.tether - WARNING - camera tether failed" in output
        assert "failure=init_failed code=-53" in output

    def test_respects_level(self):
        stream = io.StringIO()
        configure_logging(level=logging.WARNING, stream=stream, force=True)

        LoggerDiagnostics().record_event(logging.DEBUG, "initialized camera")

        assert stream.getvalue() == ""

    def test_custom_logger(self):
        logger = get_logger("tether_capture.custom")
        diagnostics = LoggerDiagnostics(logger)
        assert diagnostics.logger is logger
        assert "tether_capture.custom" in repr(diagnostics)


# =============================================================================
# Statistics Tests
# =============================================================================


class TestStatsSummary:
    def test_default_values(self):
        summary = StatsSummary()
        assert summary.captures == 0
        assert summary.captures_by_mime == {}
        assert summary.last_capture_time is None

    def test_to_dict(self):
        summary = StatsSummary(captures=2, captures_by_mime={"image/jpeg": 2})
        data = summary.to_dict()
        assert data["captures"] == 2
        assert data["captures_by_mime"] == {"image/jpeg": 2}
        assert data["last_capture_time"] is None
        json.dumps(data)


class TestTetherStats:
    def test_initial_state(self):
        summary = TetherStats().get_summary()
        assert summary.sessions_opened == 0
        assert summary.captures == 0
        assert summary.avg_fetch_ms == 0.0

    def test_record_capture(self):
        """Verifies captures are counted per MIME type with byte totals."""
        stats = TetherStats()
        stats.record_capture(100, "image/jpeg", duration_ms=10.0)
        stats.record_capture(300, "image/jpeg", duration_ms=30.0)
        stats.record_capture(5000, "image/x-canon-cr2")

        summary = stats.get_summary()

        assert summary.captures == 3
        assert summary.bytes_captured == 5400
        assert summary.captures_by_mime == {"image/jpeg": 2, "image/x-canon-cr2": 1}
        assert summary.min_fetch_ms == 10.0
        assert summary.max_fetch_ms == 30.0
        assert summary.avg_fetch_ms == 20.0
        assert summary.last_capture_time is not None

    def test_sessions_and_outcomes(self):
        stats = TetherStats()
        stats.record_session_opened()
        stats.record_session_closed()
        stats.record_outcome("tether_failed")
        stats.record_outcome("tether_failed")
        stats.record_outcome("cancelled")

        summary = stats.get_summary()

        assert summary.sessions_opened == 1
        assert summary.sessions_closed == 1
        assert summary.outcome_counts == {"tether_failed": 2, "cancelled": 1}

    def test_window_size(self):
        stats = TetherStats(window_size=2)
        for ms in (1.0, 50.0, 60.0):
            stats.record_capture(1, "image/jpeg", duration_ms=ms)

        summary = stats.get_summary()

        assert summary.min_fetch_ms == 50.0
        assert summary.captures == 3

    def test_reset(self):
        stats = TetherStats()
        stats.record_capture(1, "image/jpeg", duration_ms=1.0)
        stats.reset()
        assert stats.get_summary().captures == 0

    def test_to_dict_wraps_summary(self):
        stats = TetherStats()
        data = stats.to_dict()
        assert set(data) == {"tether", "timestamp"}
        assert data["tether"]["captures"] == 0

    def test_thread_safety(self):
        stats = TetherStats()

        def record() -> None:
            for _ in range(500):
                stats.record_capture(1, "image/jpeg", duration_ms=1.0)

        threads = [threading.Thread(target=record) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert stats.get_summary().captures == 2000


class TestPercentile:
    def test_values(self):
        assert _percentile([10.0, 20.0, 30.0], 50) == 20.0
        assert _percentile([100.0, 150.0, 200.0], 95) == pytest.approx(195.0)
        assert _percentile([], 95) == 0.0
        assert _percentile([5.0], 95) == 5.0

    def test_invalid(self):
        with pytest.raises(ValueError, match="Percentile"):
            _percentile([1.0], 101)
