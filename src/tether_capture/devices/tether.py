"""Tethered capture engine.

Drains a camera running in tethered mode and republishes every new image,
in arrival order, on a bounded stream. Transient device failures are
classified and retried without operator intervention; the stream only ends
once the caller cancels.

Structure:
- Supervising loop: open a session, init it, pump it, classify the outcome,
  back off, repeat until cancelled.
- Event pump: bounded polls for "file added", download, push. More than
  ``miss_threshold`` consecutive empty or failed polls trip the circuit
  breaker and force a reconnect.
- CaptureStream: bounded FIFO between the producer thread and consumers.
  A full stream blocks the producer (backpressure). Consumers get a
  read-only CaptureReader.

Follows the same injection seams as the rest of the package: the driver,
the Clock and the Diagnostics recorder are constructor arguments, so tests
run the whole engine against the digital twin with a fake clock.

Example:
    import threading
    from tether_capture.devices.tether import TetherEngine
    from tether_capture.drivers.cameras import create_scripted_twin, TwinEvent

    driver = create_scripted_twin([TwinEvent.file(b"...", "image/jpeg")])
    cancel = threading.Event()
    engine = TetherEngine(driver)
    for capture in engine.start(cancel):
        print(capture.mime_type, len(capture.data))
        cancel.set()
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from tether_capture.drivers.cameras.types import (
    FetchError,
    FileHandle,
    InitError,
    OpenError,
    PollError,
    TetherError,
)
from tether_capture.observability.diagnostics import Diagnostics, LoggerDiagnostics

if TYPE_CHECKING:
    from tether_capture.drivers.cameras.types import TetherDriver, TetherSession
    from tether_capture.observability.stats import TetherStats

__all__ = [
    "Capture",
    "CaptureReader",
    "CaptureStream",
    "Clock",
    "EngineConfig",
    "FailureClass",
    "IterationOutcome",
    "StreamClosedError",
    "SystemClock",
    "TetherEngine",
]

# --- Constants ---

DEFAULT_POLL_TIMEOUT_MS: int = 500
"""Bound on one wait-for-event call; also the cancellation latency."""

DEFAULT_MISS_THRESHOLD: int = 10
"""Consecutive misses tolerated; the next one trips the circuit breaker."""

DEFAULT_BACKOFF_S: float = 1.0
"""Wait after an open failure or a tripped/failed session."""

INIT_BACKOFF_S: float = 10.0
"""Wait after the camera refused to initialize (usually busy or asleep)."""

DEFAULT_STREAM_CAPACITY: int = 16
"""Captures buffered before the producer blocks."""


# --- Data Types ---


@dataclass(frozen=True)
class Capture:
    """One image downloaded from the camera.

    Attributes:
        data: File contents exactly as stored on the card.
        mime_type: MIME type reported by the driver, e.g. 'image/jpeg'.
    """

    data: bytes
    mime_type: str

    def __repr__(self) -> str:
        return f"Capture(mime_type={self.mime_type!r}, size={len(self.data)})"


class FailureClass(Enum):
    """How one supervising-loop iteration ended.

    Drives the recovery policy: OPEN_FAILED and TETHER_FAILED retry after
    the default backoff, INIT_FAILED after the long backoff, CANCELLED
    stops the engine. SUCCESS is never produced by an iteration; the pump
    only returns on failure or cancellation.
    """

    OPEN_FAILED = "open_failed"
    INIT_FAILED = "init_failed"
    TETHER_FAILED = "tether_failed"
    CANCELLED = "cancelled"
    SUCCESS = "success"


@dataclass(frozen=True)
class IterationOutcome:
    """Classified result of one iteration plus the error behind it."""

    failure: FailureClass
    error: BaseException | None = None

    @property
    def error_code(self) -> int | None:
        """Native driver code when the error came from the driver."""
        if isinstance(self.error, TetherError):
            return self.error.code
        return None


@dataclass
class EngineConfig:
    """Tunables for TetherEngine.

    Attributes:
        poll_timeout_ms: Bound on each poll_for_file() call.
        miss_threshold: Consecutive misses tolerated per session; exceeding
            it ends the session as TETHER_FAILED.
        default_backoff_s: Wait after OPEN_FAILED or TETHER_FAILED.
        init_backoff_s: Wait after INIT_FAILED.
        stream_capacity: Maximum captures buffered in the CaptureStream.
        delete_after_download: Remove each file from the card once it has
            been pushed to the stream.
            Best-effort; a failed delete is logged and ignored.

    Raises:
        ValueError: If any numeric setting is not positive.
    """

    poll_timeout_ms: int = DEFAULT_POLL_TIMEOUT_MS
    miss_threshold: int = DEFAULT_MISS_THRESHOLD
    default_backoff_s: float = DEFAULT_BACKOFF_S
    init_backoff_s: float = INIT_BACKOFF_S
    stream_capacity: int = DEFAULT_STREAM_CAPACITY
    delete_after_download: bool = False

    def __post_init__(self) -> None:
        for name in (
            "poll_timeout_ms",
            "miss_threshold",
            "default_backoff_s",
            "init_backoff_s",
            "stream_capacity",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

    @property
    def poll_timeout_s(self) -> float:
        return self.poll_timeout_ms / 1000.0


# --- Protocols (Injectable Dependencies) ---


@runtime_checkable
class Clock(Protocol):  # pragma: no cover
    """Time functions used by the engine (injectable for testing).

    Example:
        class FakeClock:
            def __init__(self):
                self.now = 0.0

            def monotonic(self) -> float:
                return self.now

            def sleep(self, seconds: float) -> None:
                self.now += seconds

            def wait(self, event, seconds) -> bool:
                self.now += seconds
                return event.is_set()

        engine = TetherEngine(driver, clock=FakeClock())
    """

    def monotonic(self) -> float:
        """Return monotonic time in seconds for duration measurement."""
        ...

    def sleep(self, seconds: float) -> None:
        """Suspend the calling thread for ``seconds``."""
        ...

    def wait(self, event: threading.Event, seconds: float) -> bool:
        """Wait up to ``seconds`` for ``event``.

        Used for backoff so that cancellation ends the wait early.

        Returns:
            True if the event is set (cancelled), False on timeout.
        """
        ...


class SystemClock:
    """Default clock backed by the time module and Event.wait()."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def wait(self, event: threading.Event, seconds: float) -> bool:
        return event.wait(seconds)


# --- Stream ---


class StreamClosedError(Exception):
    """Raised by CaptureStream.get() once the stream is closed and drained."""


class CaptureStream:
    """Bounded FIFO of captures from the engine thread to consumers.

    The producer blocks in put() while the stream is full; consumers block
    in get() until a capture arrives or the stream is closed. Iterating
    yields captures in push order and stops after close once every buffered
    capture has been consumed.

    Thread Safety:
        Safe for one producer and any number of consumers.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_STREAM_CAPACITY,
        poll_interval_s: float = DEFAULT_POLL_TIMEOUT_MS / 1000.0,
    ) -> None:
        """Create an empty open stream.

        Args:
            capacity: Maximum buffered captures, must be positive.
            poll_interval_s: Longest a blocked put() goes without
                re-checking the cancellation signal.

        Raises:
            ValueError: If capacity is not positive.
        """
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._poll_interval_s = poll_interval_s
        self._items: deque[Capture] = deque()
        self._cond = threading.Condition()
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def put(self, capture: Capture, cancel: threading.Event) -> bool:
        """Append a capture, blocking while the stream is full.

        Args:
            capture: Capture to publish.
            cancel: Cancellation signal, checked at least once per poll
                interval while blocked.

        Returns:
            True if the capture was queued. False if cancellation fired
            (or the stream was closed) while waiting for room; the capture
            is dropped.
        """
        with self._cond:
            while len(self._items) >= self._capacity:
                if cancel.is_set() or self._closed:
                    return False
                self._cond.wait(self._poll_interval_s)
            if self._closed:
                return False
            self._items.append(capture)
            self._cond.notify_all()
            return True

    def get(self, timeout: float | None = None) -> Capture:
        """Remove and return the oldest capture.

        Args:
            timeout: Seconds to wait for a capture; None waits forever.

        Returns:
            The oldest buffered capture.

        Raises:
            TimeoutError: If nothing arrived within ``timeout``.
            StreamClosedError: If the stream is closed and empty.
        """
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._items or self._closed, timeout=timeout
            )
            if not ready:
                raise TimeoutError(f"No capture within {timeout}s")
            if not self._items:
                raise StreamClosedError("Capture stream is closed")
            capture = self._items.popleft()
            self._cond.notify_all()
            return capture

    def close(self) -> None:
        """Close the stream. Buffered captures stay readable. Idempotent."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[Capture]:
        while True:
            try:
                yield self.get()
            except StreamClosedError:
                return

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"CaptureStream({state}, {len(self._items)}/{self._capacity})"


class CaptureReader:
    """Consumer side of a CaptureStream.

    Returned by TetherEngine.start(). Only reads; the engine keeps the
    stream itself and is the only party that pushes to or closes it.
    """

    def __init__(self, stream: CaptureStream) -> None:
        self._stream = stream

    @property
    def capacity(self) -> int:
        return self._stream.capacity

    @property
    def closed(self) -> bool:
        return self._stream.closed

    def __len__(self) -> int:
        return len(self._stream)

    def get(self, timeout: float | None = None) -> Capture:
        """Remove and return the oldest capture. See CaptureStream.get()."""
        return self._stream.get(timeout)

    def __iter__(self) -> Iterator[Capture]:
        return iter(self._stream)

    def __repr__(self) -> str:
        return f"CaptureReader({self._stream!r})"


# --- Engine ---


class TetherEngine:
    """Supervises tethered sessions and publishes captures on a stream.

    Dependencies are injected for testability:
        - driver: TetherDriver (libgphoto2 or digital twin)
        - config: EngineConfig (defaults: 500 ms poll, threshold 10,
          1 s / 10 s backoff, capacity 16)
        - diagnostics: Diagnostics recorder (default: LoggerDiagnostics)
        - stats: TetherStats (optional)
        - clock: Clock used for backoff and timing (default: SystemClock)

    Exactly one session is open at a time and every opened session is
    closed exactly once before the next open.

    Example:
        cancel = threading.Event()
        engine = TetherEngine(GPhotoTetherDriver())
        for capture in engine.start(cancel):
            writer.write(capture)
    """

    def __init__(
        self,
        driver: TetherDriver,
        config: EngineConfig | None = None,
        diagnostics: Diagnostics | None = None,
        stats: TetherStats | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._driver = driver
        self._config = config or EngineConfig()
        self._diagnostics = diagnostics or LoggerDiagnostics()
        self._stats = stats
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        """True while the producer thread is alive."""
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self, cancel: threading.Event) -> CaptureReader:
        """Start the producer thread and return a reader for its stream.

        The stream closes exactly once, after ``cancel`` is set and the
        current session (if any) has been closed.

        Args:
            cancel: Cancellation signal. Setting it more than once is
                harmless.

        Returns:
            A CaptureReader over a new stream fed by the producer thread.

        Raises:
            RuntimeError: If a producer from a previous start() still runs.
        """
        with self._lock:
            if self.is_running:
                raise RuntimeError("Tether engine is already running")
            stream = CaptureStream(
                capacity=self._config.stream_capacity,
                poll_interval_s=self._config.poll_timeout_s,
            )
            self._thread = threading.Thread(
                target=self._run,
                args=(cancel, stream),
                name="tether-engine",
                daemon=True,
            )
            self._thread.start()
        return CaptureReader(stream)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the producer thread to finish.

        Returns:
            True if the producer has stopped (or was never started).
        """
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _run(self, cancel: threading.Event, stream: CaptureStream) -> None:
        try:
            self._supervise(cancel, stream)
        finally:
            stream.close()
            self._diagnostics.record_event(logging.DEBUG, "tether stopped")

    def _supervise(self, cancel: threading.Event, stream: CaptureStream) -> None:
        """Reconnect loop. Returns once cancellation is observed or the
        stream can no longer accept captures."""
        while not cancel.is_set():
            outcome = self._run_iteration(cancel, stream)
            if self._stats is not None:
                self._stats.record_outcome(outcome.failure.value)

            if outcome.failure is FailureClass.CANCELLED:
                break
            if stream.closed:
                self._diagnostics.record_event(
                    logging.ERROR,
                    "tether will stop because the capture stream was closed",
                    outcome=outcome.failure.value,
                )
                return

            delay = self._backoff_for(outcome.failure)
            self._diagnostics.record_event(
                logging.WARNING,
                f"camera tether failed. retrying in {delay:g} seconds",
                failure=outcome.failure.value,
                error=str(outcome.error) if outcome.error else None,
                code=outcome.error_code,
                retry_in_s=delay,
            )
            if self._clock.wait(cancel, delay):
                break

        self._diagnostics.record_event(
            logging.DEBUG, "tether will stop because cancellation was requested"
        )

    def _backoff_for(self, failure: FailureClass) -> float:
        if failure is FailureClass.INIT_FAILED:
            return self._config.init_backoff_s
        return self._config.default_backoff_s

    def _run_iteration(
        self, cancel: threading.Event, stream: CaptureStream
    ) -> IterationOutcome:
        """Open, init and pump one session; always closes what it opened."""
        try:
            session = self._driver.open()
        except OpenError as e:
            return IterationOutcome(FailureClass.OPEN_FAILED, e)
        except Exception as e:
            self._record_unexpected("open", e)
            return IterationOutcome(FailureClass.TETHER_FAILED, e)

        if self._stats is not None:
            self._stats.record_session_opened()
        try:
            with session:
                try:
                    session.init()
                except InitError as e:
                    return IterationOutcome(FailureClass.INIT_FAILED, e)
                self._diagnostics.record_event(logging.DEBUG, "initialized camera")
                return self._pump(session, cancel, stream)
        except Exception as e:
            self._record_unexpected("session", e)
            return IterationOutcome(FailureClass.TETHER_FAILED, e)
        finally:
            if self._stats is not None:
                self._stats.record_session_closed()

    def _pump(
        self,
        session: TetherSession,
        cancel: threading.Event,
        stream: CaptureStream,
    ) -> IterationOutcome:
        """Poll, download and publish until failure or cancellation.

        Never closes the session.
        """
        misses = 0
        last_error: PollError | None = None

        while True:
            if cancel.is_set():
                return IterationOutcome(FailureClass.CANCELLED)

            try:
                handle = session.poll_for_file(self._config.poll_timeout_ms)
            except PollError as e:
                handle = None
                last_error = e
                self._diagnostics.record_event(
                    logging.DEBUG, "poll failed", error=str(e), code=e.code
                )

            if handle is None:
                misses += 1
                if misses > self._config.miss_threshold:
                    return IterationOutcome(
                        FailureClass.TETHER_FAILED,
                        last_error
                        or TetherError(
                            "aborting because errors reached consecutive threshold"
                        ),
                    )
                continue

            misses = 0
            last_error = None
            self._diagnostics.record_event(
                logging.DEBUG, "received tether event", file=handle.path
            )

            started = self._clock.monotonic()
            try:
                data, mime_type = session.fetch(handle)
            except FetchError as e:
                return IterationOutcome(FailureClass.TETHER_FAILED, e)
            duration_ms = (self._clock.monotonic() - started) * 1000.0
            self._diagnostics.record_event(
                logging.DEBUG,
                "downloaded image from tethered camera",
                file=handle.path,
                mime_type=mime_type,
                size=len(data),
            )

            capture = Capture(data=data, mime_type=mime_type)
            if not stream.put(capture, cancel):
                if cancel.is_set():
                    self._diagnostics.record_event(
                        logging.WARNING,
                        "discarded capture because cancellation was requested",
                        file=handle.path,
                    )
                    return IterationOutcome(FailureClass.CANCELLED)
                self._diagnostics.record_event(
                    logging.WARNING,
                    "discarded capture because the stream was closed",
                    file=handle.path,
                )
                return IterationOutcome(
                    FailureClass.TETHER_FAILED,
                    TetherError("capture stream closed before delivery"),
                )
            if self._stats is not None:
                self._stats.record_capture(len(data), mime_type, duration_ms)

            # Only a delivered capture may be removed from the card.
            if self._config.delete_after_download:
                self._delete(session, handle)

    def _delete(self, session: TetherSession, handle: FileHandle) -> None:
        try:
            session.delete(handle)
        except TetherError as e:
            self._diagnostics.record_event(
                logging.WARNING,
                "failed to delete file from camera",
                file=handle.path,
                error=str(e),
                code=e.code,
            )

    def _record_unexpected(self, stage: str, error: Exception) -> None:
        self._diagnostics.record_event(
            logging.ERROR,
            "unexpected tether error",
            stage=stage,
            error=str(error),
            error_type=type(error).__name__,
        )

    def __repr__(self) -> str:
        state = "running" if self.is_running else "stopped"
        return f"TetherEngine({self._driver!r}, {state})"
