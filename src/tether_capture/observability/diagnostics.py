"""Diagnostics recorder injected into the capture engine.

The engine never reaches for a module-level logger. It is handed a
``Diagnostics`` object at construction and reports everything through
``record_event(level, message, **fields)``. Production code uses
``LoggerDiagnostics``; tests pass a recorder that keeps events in a list.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from tether_capture.observability.logging import StructuredLogger, get_logger


@runtime_checkable
class Diagnostics(Protocol):  # pragma: no cover
    """Side channel for engine events (failures, backoff, session lifecycle)."""

    def record_event(self, level: int, message: str, **fields: Any) -> None:
        """Record one event.

        Args:
            level: Standard logging level (logging.DEBUG, logging.WARNING...).
            message: Constant, human-readable event text.
            **fields: Structured details (failure class, error code, counts).
        """
        ...


class LoggerDiagnostics:
    """Diagnostics backed by a StructuredLogger.

    Example:
        >>> diagnostics = LoggerDiagnostics()
        >>> diagnostics.record_event(logging.WARNING, "camera tether failed",
        ...                          failure="tether_failed", retry_in_s=1.0)
    """

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger = logger or get_logger("tether_capture.devices.tether")

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    def record_event(self, level: int, message: str, **fields: Any) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, message, **fields)

    def __repr__(self) -> str:
        return f"LoggerDiagnostics(logger={self._logger.name!r})"


__all__ = ["Diagnostics", "LoggerDiagnostics"]
