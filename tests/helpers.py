"""Test helper functions and doubles for tether-capture.

Provides protocol compliance checks plus the deterministic stand-ins the
engine tests inject: a fake Clock and a Diagnostics recorder.

Example:
    from tests.helpers import FakeClock, RecordingDiagnostics

    def test_backoff():
        clock = FakeClock(stop_after_waits=3)
        engine = TetherEngine(driver, clock=clock,
                              diagnostics=RecordingDiagnostics())
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol


def assert_implements_protocol(
    instance: object,
    protocol: type[Protocol],
) -> None:
    """Assert that an instance implements a Protocol interface.

    Args:
        instance: Object to check for protocol compliance.
        protocol: Protocol class decorated with @runtime_checkable.

    Raises:
        AssertionError: Listing the public protocol members the instance
            lacks.

    Example:
        >>> from tether_capture.drivers.cameras import TetherDriver
        >>> assert_implements_protocol(DigitalTwinTetherDriver(), TetherDriver)
    """
    if isinstance(instance, protocol):
        return

    object_attrs = set(dir(object))
    protocol_methods = {
        attr
        for attr in set(dir(protocol)) - object_attrs
        if not attr.startswith("_") or attr in ("__enter__", "__exit__")
    }
    missing = sorted(m for m in protocol_methods if not hasattr(instance, m))
    missing_str = ", ".join(missing) if missing else "unknown"
    raise AssertionError(
        f"{type(instance).__name__} does not implement {protocol.__name__}. "
        f"Missing: {missing_str}"
    )


def wait_until(
    predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.005
) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses.

    Returns:
        Final value of the predicate.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeClock:
    """Clock that never sleeps.

    ``wait()`` advances simulated time by the requested backoff and records
    it. With ``stop_after_waits=N`` the N-th wait sets the cancellation
    event, which ends the engine deterministically after N backoffs.
    """

    def __init__(self, stop_after_waits: int | None = None) -> None:
        self.now = 0.0
        self.waits: list[float] = []
        self.stop_after_waits = stop_after_waits
        self._lock = threading.Lock()

    def monotonic(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.now += max(seconds, 0.0)

    def wait(self, event: threading.Event, seconds: float) -> bool:
        with self._lock:
            self.waits.append(seconds)
            self.now += seconds
            stop = (
                self.stop_after_waits is not None
                and len(self.waits) >= self.stop_after_waits
            )
        if stop:
            event.set()
        return event.is_set()


@dataclass
class RecordedEvent:
    level: int
    message: str
    fields: dict[str, Any] = field(default_factory=dict)


class RecordingDiagnostics:
    """Diagnostics recorder that keeps every event in memory."""

    def __init__(self) -> None:
        self._events: list[RecordedEvent] = []
        self._lock = threading.Lock()

    def record_event(self, level: int, message: str, **fields: Any) -> None:
        with self._lock:
            self._events.append(RecordedEvent(level, message, fields))

    @property
    def events(self) -> list[RecordedEvent]:
        with self._lock:
            return list(self._events)

    def failures(self) -> list[str]:
        """Failure classes reported before each backoff, in order."""
        return [e.fields["failure"] for e in self.events if "failure" in e.fields]

    def messages(self) -> list[str]:
        return [e.message for e in self.events]
