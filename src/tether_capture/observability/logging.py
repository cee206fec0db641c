"""Structured logging for tether-capture.

Thin layer over the standard logging module that lets every call carry
key=value fields next to the message:

- ``StructuredLogger``: keyword arguments become ``record.structured_data``
- ``StructuredFormatter``: ``... - message | key=value key=value``
- ``JSONFormatter``: one JSON object per line for log shipping
- ``LogContext``: ambient fields (e.g. ``session=3``) for a block of code

Only the ``tether_capture`` logger hierarchy is configured; the root logger
is left alone so embedding applications keep control of their own output.

Security Note:
    Device-provided strings (file names, driver error text) go into keyword
    fields, never into the message itself:

    # SAFE
    logger.warning("Fetch failed", file=handle.name, error=str(exc))

    # UNSAFE - a crafted name could forge extra log lines
    logger.warning(f"Fetch failed for {handle.name}")

Example:
    logger = get_logger(__name__)
    logger.info("Camera initialized")
    logger.debug("Received tether event", folder="/store_00010001", name="IMG_0001.JPG")

    with LogContext(session=4):
        logger.warning("Poll missed", misses=3)

    configure_logging(level="DEBUG", json_format=True, force=True)
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, cast

#: Name of the package logger that configure_logging() owns.
ROOT_LOGGER_NAME = "tether_capture"

_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "log_context", default={}
)


# =============================================================================
# Structured Log Record
# =============================================================================


class StructuredLogRecord(logging.LogRecord):
    """LogRecord carrying a ``structured_data`` dict of extra fields."""

    structured_data: dict[str, Any]

    def __init__(
        self,
        name: str,
        level: int,
        pathname: str,
        lineno: int,
        msg: object,
        args: tuple[Any, ...] | MutableMapping[str, Any] | None,
        exc_info: Any,
        func: str | None = None,
        sinfo: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Create a record and attach its structured fields.

        Args:
            name: Logger name (e.g. 'tether_capture.devices.tether').
            level: Numeric log level.
            pathname: Source file of the logging call.
            lineno: Source line of the logging call.
            msg: Log message, may contain % placeholders.
            args: Arguments for % formatting, or None.
            exc_info: Exception tuple or None.
            func: Function name of the call site.
            sinfo: Stack info text.
            **kwargs: ``structured_data`` (dict) is picked up if present.

        Example:
            >>> record = StructuredLogRecord(
            ...     "t", 20, "x.py", 1, "Captured", (), None,
            ...     structured_data={"bytes": 5120},
            ... )
            >>> record.structured_data
            {'bytes': 5120}
        """
        super().__init__(
            name, level, pathname, lineno, msg, args, exc_info, func, sinfo
        )
        self.structured_data = kwargs.get("structured_data", {})


# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept keyword fields.

    Usage:
        logger = get_logger("tether_capture.cli")
        logger.info("Saved photo", file="out/0.jpg", duration_ms=12.5)
    """

    def debug(
        self,
        msg: object,
        *args: Any,
        exc_info: Any = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        """Log a debug message with structured fields."""
        if self.isEnabledFor(logging.DEBUG):
            self._log(
                logging.DEBUG,
                msg,
                args,
                exc_info=exc_info,
                extra=extra,
                stack_info=stack_info,
                stacklevel=stacklevel + 1,
                **kwargs,
            )

    def info(
        self,
        msg: object,
        *args: Any,
        exc_info: Any = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        """Log an info message with structured fields."""
        if self.isEnabledFor(logging.INFO):
            self._log(
                logging.INFO,
                msg,
                args,
                exc_info=exc_info,
                extra=extra,
                stack_info=stack_info,
                stacklevel=stacklevel + 1,
                **kwargs,
            )

    def warning(
        self,
        msg: object,
        *args: Any,
        exc_info: Any = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        """Log a warning message with structured fields."""
        if self.isEnabledFor(logging.WARNING):
            self._log(
                logging.WARNING,
                msg,
                args,
                exc_info=exc_info,
                extra=extra,
                stack_info=stack_info,
                stacklevel=stacklevel + 1,
                **kwargs,
            )

    def error(
        self,
        msg: object,
        *args: Any,
        exc_info: Any = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        """Log an error message with structured fields."""
        if self.isEnabledFor(logging.ERROR):
            self._log(
                logging.ERROR,
                msg,
                args,
                exc_info=exc_info,
                extra=extra,
                stack_info=stack_info,
                stacklevel=stacklevel + 1,
                **kwargs,
            )

    def _log(
        self,
        level: int,
        msg: object,
        args: tuple[Any, ...] | MutableMapping[str, Any] | None = None,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs: Any,
    ) -> None:
        """Merge LogContext and keyword fields, then log.

        Explicit keyword fields win over ambient LogContext values with the
        same key. ``Logger.log(level, msg, **fields)`` also lands here, which
        is what LoggerDiagnostics relies on.

        Args:
            level: Numeric log level.
            msg: Log message.
            args: % formatting arguments.
            exc_info: Exception info or True for the current exception.
            extra: Extra LogRecord attributes; ``structured_data`` is
                overwritten.
            stack_info: Include a stack trace.
            stacklevel: Frames to skip when locating the caller.
            **kwargs: Structured fields.
        """
        structured_data = {**_log_context.get(), **kwargs}

        if extra is None:
            extra = {}
        extra["structured_data"] = structured_data

        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


# =============================================================================
# Formatters
# =============================================================================


class StructuredFormatter(logging.Formatter):
    """Human-readable formatter: ``time - name - LEVEL - msg | k=v k=v``."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        include_structured: bool = True,
    ) -> None:
        """Create the console formatter.

        Args:
            fmt: Base format string. Defaults to
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'.
            datefmt: Format for %(asctime)s.
            include_structured: Append ' | key=value ...' when the record
                carries structured fields.
        """
        if fmt is None:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        super().__init__(fmt, datefmt)
        self.include_structured = include_structured

    def format(self, record: logging.LogRecord) -> str:
        """Format the base line and append structured fields.

        Args:
            record: Record to format; ``structured_data`` is optional.

        Returns:
            Formatted line, e.g.
            '... - WARNING - camera tether failed | failure=tether_failed'.
        """
        base = super().format(record)

        if not self.include_structured:
            return base

        structured = getattr(record, "structured_data", {})
        if not structured:
            return base

        pairs = " ".join(f"{k}={_format_value(v)}" for k, v in structured.items())
        return f"{base} | {pairs}"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, structured fields at top level."""

    def format(self, record: logging.LogRecord) -> str:
        """Serialize a record to a single JSON line.

        Keys: timestamp (UTC ISO 8601), level, logger, message, every
        structured field, and ``exception`` when exc_info is set.
        Values json cannot handle are passed through str().

        Args:
            record: Record to serialize.

        Returns:
            JSON text without trailing newline.
        """
        log_dict: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        log_dict.update(getattr(record, "structured_data", {}))

        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_dict, default=str)


def _format_value(value: Any) -> str:
    """Render a field value for key=value output.

    None becomes 'null', strings containing spaces are quoted, dicts and
    lists are JSON encoded, everything else goes through str().

    Example:
        >>> _format_value("image/jpeg")
        'image/jpeg'
        >>> _format_value("no device")
        '"no device"'
        >>> _format_value(None)
        'null'
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        if " " in value:
            return f'"{value}"'
        return value
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)


# =============================================================================
# Context Management
# =============================================================================


@dataclass
class LogContext:
    """Add fields to every log call made inside a ``with`` block.

    Backed by contextvars, so each thread (and the engine's producer thread)
    sees only its own context. Nested contexts merge, inner values win.

    Usage:
        with LogContext(session=2):
            logger.debug("Camera initialized")  # includes session=2
    """

    _kwargs: dict[str, Any] = field(default_factory=dict, init=False, repr=True)
    _token: contextvars.Token[dict[str, Any]] | None = field(
        default=None, init=False, repr=False
    )

    def __init__(self, **kwargs: Any) -> None:
        self._kwargs = kwargs

    def __enter__(self) -> LogContext:
        current = _log_context.get()
        self._token = _log_context.set({**current, **self._kwargs})
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)


# =============================================================================
# Configuration
# =============================================================================

_configured = False
_config_lock = threading.Lock()


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
    force: bool = False,
) -> None:
    """Install the package handler on the ``tether_capture`` logger.

    Idempotent: later calls do nothing unless ``force`` is True, in which
    case existing handlers are closed and replaced. Guarded by a lock so the
    CLI thread and the engine thread can race on first use safely.

    Args:
        level: Minimum level, int or name ('DEBUG', 'WARNING', ...).
        json_format: Use JSONFormatter instead of StructuredFormatter.
        stream: Destination stream, default sys.stderr.
        include_structured: Append key=value fields in text mode.
        force: Reconfigure even if already configured.

    Example:
        >>> configure_logging(level="DEBUG")
        >>> configure_logging(json_format=True, force=True)
    """
    with _config_lock:
        if force:
            _reset_logging_impl()
        _configure_logging_impl(level, json_format, stream, include_structured)


def _configure_logging_impl(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
) -> None:
    """configure_logging body; caller holds _config_lock."""
    global _configured

    if _configured:
        return

    logging.setLoggerClass(StructuredLogger)

    if stream is None:
        stream = sys.stderr
    handler = logging.StreamHandler(stream)

    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = StructuredFormatter(include_structured=include_structured)
    handler.setFormatter(formatter)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    if isinstance(level, str):
        level = level.upper()
    root.setLevel(level)
    root.addHandler(handler)
    root.propagate = False

    _configured = True


def _reset_logging_impl() -> None:
    """reset_logging body; caller holds _config_lock."""
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    _configured = False


def reset_logging() -> None:
    """Drop all package handlers and mark logging unconfigured (tests)."""
    with _config_lock:
        _reset_logging_impl()


def get_logger(name: str) -> StructuredLogger:
    """Return a StructuredLogger, configuring defaults on first use.

    Args:
        name: Usually ``__name__``; should live under 'tether_capture' so
            the package handler applies.

    Returns:
        StructuredLogger accepting ``logger.info("msg", key=value)``.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Writer ready", output_dir="./tether")
    """
    if not _configured:
        with _config_lock:
            if not _configured:  # pragma: no branch
                _configure_logging_impl()

    # setLoggerClass() in configure makes new loggers StructuredLogger.
    return cast(StructuredLogger, logging.getLogger(name))
