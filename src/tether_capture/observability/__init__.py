"""Observability for tether-capture.

Structured logging, the diagnostics recorder the engine reports through,
and run statistics.

Example:
    from tether_capture.observability import LogContext, get_logger

    logger = get_logger(__name__)
    logger.info("Writer ready")

    with LogContext(session=1):
        logger.debug("Camera initialized", model="Canon EOS 80D")

Statistics Example:
    from tether_capture.observability import TetherStats

    stats = TetherStats()
    engine = TetherEngine(driver, stats=stats)
    ...
    summary = stats.get_summary()
    print(f"{summary.captures} photos over {summary.sessions_opened} sessions")
"""

from tether_capture.observability.diagnostics import (
    Diagnostics,
    LoggerDiagnostics,
)
from tether_capture.observability.logging import (
    LogContext,
    StructuredLogger,
    configure_logging,
    get_logger,
    reset_logging,
)
from tether_capture.observability.stats import (
    StatsSummary,
    TetherStats,
)

__all__ = [
    # Logging
    "LogContext",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
    # Diagnostics
    "Diagnostics",
    "LoggerDiagnostics",
    # Statistics
    "StatsSummary",
    "TetherStats",
]
