"""Tether statistics collection and reporting.

Counts what the capture engine does over a run:
- Sessions opened and closed
- Captures delivered (count, bytes, per MIME type)
- Iteration outcomes by failure class
- Fetch durations (min, max, avg, p95) over a rolling window

Thread-safe: the engine thread records while the CLI thread reads.

Example:
    stats = TetherStats()
    stats.record_session_opened()
    stats.record_capture(size_bytes=5_242_880, mime_type="image/jpeg",
                         duration_ms=84.0)
    stats.record_outcome("tether_failed")

    summary = stats.get_summary()
    print(f"{summary.captures} captures, {summary.sessions_opened} sessions")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# =============================================================================
# Constants
# =============================================================================

#: Fetch durations retained for the rolling percentile window.
DEFAULT_STATS_WINDOW_SIZE: int = 1000


def _utc_now() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class StatsSummary:
    """Snapshot of a TetherStats collector.

    Attributes:
        sessions_opened: Sessions successfully opened by the driver.
        sessions_closed: Sessions closed by the supervising loop.
        captures: Captures pushed onto the stream.
        bytes_captured: Sum of capture payload sizes.
        captures_by_mime: Capture count per MIME type.
        outcome_counts: Iteration outcomes keyed by failure class value.
        min_fetch_ms: Fastest file fetch in the window.
        max_fetch_ms: Slowest file fetch in the window.
        avg_fetch_ms: Mean fetch duration in the window.
        p95_fetch_ms: 95th percentile fetch duration in the window.
        last_capture_time: UTC time of the latest capture.
        uptime_seconds: Seconds since creation or reset.
    """

    sessions_opened: int = 0
    sessions_closed: int = 0
    captures: int = 0
    bytes_captured: int = 0
    captures_by_mime: dict[str, int] = field(default_factory=dict)
    outcome_counts: dict[str, int] = field(default_factory=dict)
    min_fetch_ms: float = 0.0
    max_fetch_ms: float = 0.0
    avg_fetch_ms: float = 0.0
    p95_fetch_ms: float = 0.0
    last_capture_time: datetime | None = None
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-compatible types.

        Returns:
            Dict with every attribute; ``last_capture_time`` as an ISO string
            or None, mapping attributes copied.

        Example:
            >>> json.dumps(stats.get_summary().to_dict())
        """
        return {
            "sessions_opened": self.sessions_opened,
            "sessions_closed": self.sessions_closed,
            "captures": self.captures,
            "bytes_captured": self.bytes_captured,
            "captures_by_mime": self.captures_by_mime.copy(),
            "outcome_counts": self.outcome_counts.copy(),
            "min_fetch_ms": self.min_fetch_ms,
            "max_fetch_ms": self.max_fetch_ms,
            "avg_fetch_ms": self.avg_fetch_ms,
            "p95_fetch_ms": self.p95_fetch_ms,
            "last_capture_time": (
                self.last_capture_time.isoformat() if self.last_capture_time else None
            ),
            "uptime_seconds": self.uptime_seconds,
        }


class TetherStats:
    """Thread-safe counters for one capture engine.

    Inject into TetherEngine; the engine records, anyone may read.

    Usage:
        stats = TetherStats()
        engine = TetherEngine(driver, stats=stats)
        ...
        logger.info("Run finished", **stats.get_summary().to_dict())
    """

    def __init__(self, window_size: int = DEFAULT_STATS_WINDOW_SIZE) -> None:
        """Create an empty collector.

        Args:
            window_size: Fetch durations kept for min/max/avg/p95.
        """
        self._window_size = window_size
        self._fetch_ms: deque[float] = deque(maxlen=window_size)
        self._lock = threading.Lock()
        self._reset_unlocked()

    def _reset_unlocked(self) -> None:
        self._sessions_opened = 0
        self._sessions_closed = 0
        self._captures = 0
        self._bytes = 0
        self._by_mime: dict[str, int] = {}
        self._outcomes: dict[str, int] = {}
        self._fetch_ms.clear()
        self._last_capture_time: datetime | None = None
        self._start_time = time.monotonic()

    def record_session_opened(self) -> None:
        with self._lock:
            self._sessions_opened += 1

    def record_session_closed(self) -> None:
        with self._lock:
            self._sessions_closed += 1

    def record_capture(
        self,
        size_bytes: int,
        mime_type: str,
        duration_ms: float = 0.0,
    ) -> None:
        """Count one capture pushed onto the stream.

        Args:
            size_bytes: Payload length.
            mime_type: Encoding reported by the device.
            duration_ms: Time spent fetching the file from the device. Zero
                values are counted but kept out of the duration window.
        """
        with self._lock:
            self._captures += 1
            self._bytes += size_bytes
            self._by_mime[mime_type] = self._by_mime.get(mime_type, 0) + 1
            if duration_ms > 0:
                self._fetch_ms.append(duration_ms)
            self._last_capture_time = _utc_now()

    def record_outcome(self, outcome: str) -> None:
        """Count one supervising-loop iteration outcome.

        Args:
            outcome: Failure class value, e.g. 'open_failed', 'cancelled'.
        """
        with self._lock:
            self._outcomes[outcome] = self._outcomes.get(outcome, 0) + 1

    def get_summary(self) -> StatsSummary:
        """Return a consistent snapshot.

        Counters are copied under the lock; sorting for the percentile
        happens outside it.

        Returns:
            StatsSummary for this collector.

        Example:
            >>> stats = TetherStats()
            >>> stats.record_capture(100, "image/jpeg", duration_ms=10.0)
            >>> stats.record_capture(300, "image/jpeg", duration_ms=30.0)
            >>> stats.get_summary().avg_fetch_ms
            20.0
        """
        with self._lock:
            opened = self._sessions_opened
            closed = self._sessions_closed
            captures = self._captures
            total_bytes = self._bytes
            by_mime = self._by_mime.copy()
            outcomes = self._outcomes.copy()
            durations = list(self._fetch_ms)
            last_capture_time = self._last_capture_time
            start_time = self._start_time

        if durations:
            min_ms = min(durations)
            max_ms = max(durations)
            avg_ms = sum(durations) / len(durations)
            p95_ms = _percentile(sorted(durations), 95)
        else:
            min_ms = max_ms = avg_ms = p95_ms = 0.0

        return StatsSummary(
            sessions_opened=opened,
            sessions_closed=closed,
            captures=captures,
            bytes_captured=total_bytes,
            captures_by_mime=by_mime,
            outcome_counts=outcomes,
            min_fetch_ms=min_ms,
            max_fetch_ms=max_ms,
            avg_fetch_ms=avg_ms,
            p95_fetch_ms=p95_ms,
            last_capture_time=last_capture_time,
            uptime_seconds=time.monotonic() - start_time,
        )

    def reset(self) -> None:
        """Zero every counter and restart the uptime clock."""
        with self._lock:
            self._reset_unlocked()

    def to_dict(self) -> dict[str, Any]:
        """Summary plus export timestamp, ready for json.dumps()."""
        return {
            "tether": self.get_summary().to_dict(),
            "timestamp": _utc_now().isoformat(),
        }


def _percentile(sorted_data: list[float], p: float) -> float:
    """Linearly interpolated percentile of ascending data.

    Args:
        sorted_data: Values sorted ascending. Empty returns 0.0.
        p: Percentile in [0, 100].

    Returns:
        Interpolated value.

    Raises:
        ValueError: If p is outside [0, 100].

    Example:
        >>> _percentile([10.0, 20.0, 30.0], 50)
        20.0
        >>> _percentile([100.0, 150.0, 200.0], 95)
        195.0
    """
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be between 0 and 100, got {p}")

    if not sorted_data:
        return 0.0

    k = (len(sorted_data) - 1) * (p / 100)
    floor_idx = int(k)
    ceil_idx = min(floor_idx + 1, len(sorted_data) - 1)

    if floor_idx == ceil_idx:
        return sorted_data[floor_idx]

    fraction = k - floor_idx
    return sorted_data[floor_idx] * (1 - fraction) + sorted_data[ceil_idx] * fraction
