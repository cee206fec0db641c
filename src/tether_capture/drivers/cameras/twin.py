"""Digital Twin Tether Driver - Simulated Camera for Testing.

Stands in for a tethered camera without USB hardware. Follows the
TetherDriver / TetherSession protocols so the capture engine cannot tell
the difference.

Image Sources:
    SCRIPT: Replay a fixed list of TwinEvent steps (tests)
    SYNTHETIC: Produce a JPEG test pattern every capture_interval_s
    DIRECTORY: Produce the files of a folder in order, one per interval

Fault injection (all sources):
    open_failures / init_failures: the first N open()/init() calls fail
    fail_deletes: delete() always raises
    TwinEvent.poll_error() / TwinEvent.fetch_error(): scripted faults

Instrumentation:
    TwinCounters records opens, inits, closes, polls, fetches, deletes,
    the time of every open attempt and the highest number of sessions
    open at once.

Example:
    from tether_capture.drivers.cameras.twin import (
        DigitalTwinConfig,
        DigitalTwinTetherDriver,
        TwinEvent,
    )

    driver = DigitalTwinTetherDriver(
        DigitalTwinConfig(
            script=[TwinEvent.file(b"jpeg-1"), TwinEvent.timeout()],
            init_failures=1,
        )
    )
"""

from __future__ import annotations

import mimetypes
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, Any, final

import cv2
import numpy as np

from tether_capture.drivers.cameras.types import (
    FetchError,
    FileHandle,
    InitError,
    OpenError,
    PollError,
    TetherError,
)
from tether_capture.observability import get_logger

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = get_logger(__name__)

__all__ = [
    "DigitalTwinConfig",
    "DigitalTwinTetherDriver",
    "DigitalTwinTetherSession",
    "ImageSource",
    "TwinCounters",
    "TwinEvent",
    "TwinEventKind",
    "create_directory_twin",
    "create_scripted_twin",
]


class ImageSource(Enum):
    """Where the twin's captures come from."""

    SCRIPT = "script"  # Replay TwinEvent steps
    SYNTHETIC = "synthetic"  # Generated test pattern
    DIRECTORY = "directory"  # Files from a folder


class TwinEventKind(Enum):
    """Outcome of one scripted poll."""

    FILE = "file"
    TIMEOUT = "timeout"
    POLL_ERROR = "poll_error"
    FETCH_ERROR = "fetch_error"


@dataclass(frozen=True)
class TwinEvent:
    """One scripted poll result.

    Use the class-method constructors rather than building instances by hand.
    """

    kind: TwinEventKind
    data: bytes = b""
    mime_type: str = "image/jpeg"

    @classmethod
    def file(cls, data: bytes, mime_type: str = "image/jpeg") -> TwinEvent:
        return cls(TwinEventKind.FILE, data, mime_type)

    @classmethod
    def timeout(cls) -> TwinEvent:
        return cls(TwinEventKind.TIMEOUT)

    @classmethod
    def poll_error(cls) -> TwinEvent:
        return cls(TwinEventKind.POLL_ERROR)

    @classmethod
    def fetch_error(cls) -> TwinEvent:
        return cls(TwinEventKind.FETCH_ERROR)


# =============================================================================
# Constants
# =============================================================================

_TWIN_FOLDER = "/store_00010001/DCIM/100TWIN"

_SYNTHETIC_WIDTH = 1280
_SYNTHETIC_HEIGHT = 960
_SYNTHETIC_GRID_SPACING = 64
_DEFAULT_JPEG_QUALITY = 90

# Error codes mirroring libgphoto2 so diagnostics look familiar.
_GP_ERROR_IO = -7
_GP_ERROR_MODEL_NOT_FOUND = -105
_GP_ERROR_IO_USB_CLAIM = -53

_EXTENSIONS: dict[str, str] = {
    "image/jpeg": "JPG",
    "image/x-canon-cr2": "CR2",
    "image/x-nikon-nef": "NEF",
    "image/x-raw": "RAW",
}


@dataclass
class DigitalTwinConfig:
    """Behavior of a simulated tethered camera.

    Attributes:
        image_source: SCRIPT, SYNTHETIC or DIRECTORY.
        script: Poll results replayed in order for SCRIPT. Shared by all
            sessions of one driver: a reopened session continues where the
            previous one stopped.
        image_path: Folder read by DIRECTORY.
        capture_interval_s: Seconds between simulated shutter presses for
            SYNTHETIC and DIRECTORY.
        open_failures: Number of initial open() calls that raise OpenError.
        init_failures: Number of initial init() calls that raise InitError.
        fail_deletes: Make every delete() raise TetherError.
        timeout_scale: Multiplier on simulated poll waits. 1.0 waits the
            real timeout, 0.0 returns immediately.
        on_poll: Called with the 1-based poll number before each poll is
            served. Lets tests act at a precise point in the run.
    """

    image_source: ImageSource = ImageSource.SCRIPT
    script: list[TwinEvent] = field(default_factory=list)
    image_path: Path | None = None
    capture_interval_s: float = 2.0
    open_failures: int = 0
    init_failures: int = 0
    fail_deletes: bool = False
    timeout_scale: float = 1.0
    on_poll: Callable[[int], None] | None = None


@dataclass
class TwinCounters:
    """Call counts observed by a DigitalTwinTetherDriver.

    Attributes:
        open_attempts: Calls to open(), failed or not.
        opens: Sessions successfully created.
        inits: Successful init() calls.
        closes: Sessions closed (first close() call only).
        polls: poll_for_file() calls.
        fetches: Successful fetch() calls.
        deletes: Successful delete() calls.
        open_sessions: Sessions currently open.
        max_open_sessions: Highest value open_sessions ever reached.
        open_attempt_times: Clock reading at every open() call.
    """

    open_attempts: int = 0
    opens: int = 0
    inits: int = 0
    closes: int = 0
    polls: int = 0
    fetches: int = 0
    deletes: int = 0
    open_sessions: int = 0
    max_open_sessions: int = 0
    open_attempt_times: list[float] = field(default_factory=list)


@final
class DigitalTwinTetherSession:
    """One simulated camera connection.

    Holds per-session state only (init flag, pending files); the script
    cursor and counters live on the driver.
    """

    def __init__(self, driver: DigitalTwinTetherDriver, session_id: int) -> None:
        self._driver = driver
        self._session_id = session_id
        self._initialized = False
        self._closed = False
        self._pending: dict[FileHandle, TwinEvent] = {}

    @property
    def session_id(self) -> int:
        return self._session_id

    @property
    def is_closed(self) -> bool:
        return self._closed

    def init(self) -> None:
        """Simulate the handshake; fails while init_failures remain.

        Raises:
            InitError: With code -53 (USB claim) for injected failures.
            TetherError: If called on a closed session.
        """
        self._ensure_open()
        self._driver._before_init()
        self._initialized = True
        logger.debug("Initialized camera", session=self._session_id)

    def poll_for_file(self, timeout_ms: int) -> FileHandle | None:
        """Serve the next simulated event.

        Args:
            timeout_ms: Simulated wait for timeouts, scaled by timeout_scale.

        Returns:
            FileHandle for FILE / FETCH_ERROR events, None on timeout.

        Raises:
            PollError: For scripted POLL_ERROR events or an uninitialized
                session.
        """
        self._ensure_open()
        if not self._initialized:
            raise PollError("Camera not initialized", code=_GP_ERROR_IO)

        event = self._driver._next_event(timeout_ms)
        if event is None or event.kind is TwinEventKind.TIMEOUT:
            return None
        if event.kind is TwinEventKind.POLL_ERROR:
            raise PollError("Simulated event wait failure", code=_GP_ERROR_IO)

        handle = self._driver._new_handle(event.mime_type)
        self._pending[handle] = event
        return handle

    def fetch(self, handle: FileHandle) -> tuple[bytes, str]:
        """Return the bytes announced by the matching poll.

        Raises:
            FetchError: For FETCH_ERROR events or unknown handles.
        """
        self._ensure_open()
        event = self._pending.pop(handle, None)
        if event is None:
            raise FetchError(f"No such file {handle.path}", code=_GP_ERROR_IO)
        if event.kind is TwinEventKind.FETCH_ERROR:
            raise FetchError(
                f"Simulated transfer failure for {handle.path}", code=_GP_ERROR_IO
            )
        self._driver._count("fetches")
        return event.data, event.mime_type

    def delete(self, handle: FileHandle) -> None:
        """Pretend to delete the file from the card.

        Raises:
            TetherError: When the driver was configured with fail_deletes.
        """
        self._ensure_open()
        if self._driver.config.fail_deletes:
            raise TetherError(
                f"Simulated delete failure for {handle.path}", code=_GP_ERROR_IO
            )
        self._driver._count("deletes")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending.clear()
        self._driver._release(self)
        logger.debug("Camera exited", session=self._session_id)

    def _ensure_open(self) -> None:
        if self._closed:
            raise TetherError("Session is closed")

    def __enter__(self) -> DigitalTwinTetherSession:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"DigitalTwinTetherSession(id={self._session_id}, {state})"


@final
class DigitalTwinTetherDriver:
    """Simulated tether driver.

    Thread-safe: the engine's producer thread drives sessions while a test
    thread reads ``counters``.

    Example:
        >>> driver = create_scripted_twin([TwinEvent.file(b"a")],
        ...                               timeout_scale=0.0)
        >>> with driver.open() as session:
        ...     session.init()
        ...     handle = session.poll_for_file(500)
        ...     session.fetch(handle)
        (b'a', 'image/jpeg')
    """

    def __init__(
        self,
        config: DigitalTwinConfig | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Create a simulated driver.

        Args:
            config: Twin behavior; defaults to an empty script.
            clock: Time source for open_attempt_times and synthetic capture
                pacing. Defaults to time.monotonic.
            sleep: Used for simulated poll waits. Defaults to time.sleep.
        """
        self.config = config or DigitalTwinConfig()
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self._lock = threading.Lock()
        self._counters = TwinCounters()
        self._cursor = 0
        self._init_attempts = 0
        self._file_number = 0
        self._next_session_id = 1
        self._last_capture_at: float | None = None
        self._directory_files = self._load_directory_files()

    @property
    def counters(self) -> TwinCounters:
        """Copy of the current counters."""
        with self._lock:
            c = self._counters
            return TwinCounters(
                open_attempts=c.open_attempts,
                opens=c.opens,
                inits=c.inits,
                closes=c.closes,
                polls=c.polls,
                fetches=c.fetches,
                deletes=c.deletes,
                open_sessions=c.open_sessions,
                max_open_sessions=c.max_open_sessions,
                open_attempt_times=list(c.open_attempt_times),
            )

    @property
    def script_exhausted(self) -> bool:
        with self._lock:
            return self._cursor >= len(self.config.script)

    def open(self) -> DigitalTwinTetherSession:
        """Create a session, failing while open_failures remain.

        Raises:
            OpenError: With code -105 (model not found) for injected failures.
        """
        with self._lock:
            self._counters.open_attempts += 1
            self._counters.open_attempt_times.append(self._clock())
            if self._counters.open_attempts <= self.config.open_failures:
                raise OpenError(
                    "Simulated camera not found", code=_GP_ERROR_MODEL_NOT_FOUND
                )
            session_id = self._next_session_id
            self._next_session_id += 1
            self._counters.opens += 1
            self._counters.open_sessions += 1
            self._counters.max_open_sessions = max(
                self._counters.max_open_sessions, self._counters.open_sessions
            )
        logger.debug("Initialized libgphoto2 context", session=session_id)
        return DigitalTwinTetherSession(self, session_id)

    # -- internal hooks used by DigitalTwinTetherSession ----------------------

    def _before_init(self) -> None:
        with self._lock:
            self._init_attempts += 1
            if self._init_attempts <= self.config.init_failures:
                raise InitError(
                    "Simulated USB claim failure", code=_GP_ERROR_IO_USB_CLAIM
                )
            self._counters.inits += 1

    def _release(self, session: DigitalTwinTetherSession) -> None:
        with self._lock:
            self._counters.closes += 1
            self._counters.open_sessions -= 1

    def _count(self, name: str) -> None:
        with self._lock:
            setattr(self._counters, name, getattr(self._counters, name) + 1)

    def _new_handle(self, mime_type: str) -> FileHandle:
        with self._lock:
            self._file_number += 1
            number = self._file_number
        extension = _EXTENSIONS.get(mime_type, "BIN")
        return FileHandle(folder=_TWIN_FOLDER, name=f"IMG_{number:04d}.{extension}")

    def _next_event(self, timeout_ms: int) -> TwinEvent | None:
        with self._lock:
            self._counters.polls += 1
            poll_number = self._counters.polls

        if self.config.on_poll is not None:
            self.config.on_poll(poll_number)

        if self.config.image_source is ImageSource.SCRIPT:
            return self._next_scripted(timeout_ms)
        return self._next_timed(timeout_ms)

    def _next_scripted(self, timeout_ms: int) -> TwinEvent | None:
        with self._lock:
            if self._cursor < len(self.config.script):
                event = self.config.script[self._cursor]
                self._cursor += 1
            else:
                event = None
        if event is None or event.kind is TwinEventKind.TIMEOUT:
            self._wait(timeout_ms / 1000)
        return event

    def _next_timed(self, timeout_ms: int) -> TwinEvent | None:
        now = self._clock()
        if self._last_capture_at is None:
            self._last_capture_at = now
        due_at = self._last_capture_at + self.config.capture_interval_s
        remaining = due_at - now
        if remaining > timeout_ms / 1000:
            self._wait(timeout_ms / 1000)
            return None
        self._wait(max(remaining, 0.0))
        self._last_capture_at = due_at
        if self.config.image_source is ImageSource.DIRECTORY:
            return self._directory_event()
        return TwinEvent.file(self._synthetic_jpeg(), "image/jpeg")

    def _wait(self, seconds: float) -> None:
        scaled = seconds * self.config.timeout_scale
        if scaled > 0:
            self._sleep(scaled)

    # -- image generation ------------------------------------------------------

    def _load_directory_files(self) -> list[Path]:
        if self.config.image_source is not ImageSource.DIRECTORY:
            return []
        path = self.config.image_path
        if path is None or not path.is_dir():
            logger.warning("Twin image directory missing", path=str(path))
            return []
        files = sorted(p for p in path.iterdir() if p.is_file())
        logger.info("Loaded twin images", path=str(path), count=len(files))
        return files

    def _directory_event(self) -> TwinEvent | None:
        if not self._directory_files:
            return TwinEvent.file(self._synthetic_jpeg(), "image/jpeg")
        with self._lock:
            index = self._file_number % len(self._directory_files)
        path = self._directory_files[index]
        mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        try:
            return TwinEvent.file(path.read_bytes(), mime_type)
        except OSError as e:
            logger.warning("Twin image unreadable", path=str(path), error=str(e))
            return TwinEvent.fetch_error()

    def _synthetic_jpeg(self) -> bytes:
        """Render a numbered grid test pattern and encode it as JPEG."""
        with self._lock:
            frame_number = self._file_number + 1

        img: NDArray[Any] = np.zeros(
            (_SYNTHETIC_HEIGHT, _SYNTHETIC_WIDTH, 3), dtype=np.uint8
        )
        img[::_SYNTHETIC_GRID_SPACING, :] = [60, 60, 60]
        img[:, ::_SYNTHETIC_GRID_SPACING] = [60, 60, 60]
        cv2.putText(
            img,
            f"DIGITAL TWIN - Frame {frame_number}",
            (50, 80),
            cv2.FONT_HERSHEY_SIMPLEX,
            1.5,
            (255, 255, 255),
            2,
        )

        _, jpeg = cv2.imencode(
            ".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, _DEFAULT_JPEG_QUALITY]
        )
        return jpeg.tobytes()

    def __repr__(self) -> str:
        return (
            f"DigitalTwinTetherDriver(source={self.config.image_source.value}, "
            f"script_steps={len(self.config.script)})"
        )


# =============================================================================
# Factory Functions
# =============================================================================


def create_scripted_twin(
    events: Iterable[TwinEvent],
    **options: Any,
) -> DigitalTwinTetherDriver:
    """Twin that replays ``events`` then times out forever.

    Args:
        events: Poll results in order.
        **options: Other DigitalTwinConfig fields, plus ``clock`` and
            ``sleep`` forwarded to the driver.

    Example:
        >>> driver = create_scripted_twin(
        ...     [TwinEvent.file(b"1"), TwinEvent.fetch_error()],
        ...     open_failures=2,
        ...     timeout_scale=0.0,
        ... )
    """
    clock = options.pop("clock", None)
    sleep = options.pop("sleep", None)
    config = DigitalTwinConfig(
        image_source=ImageSource.SCRIPT, script=list(events), **options
    )
    return DigitalTwinTetherDriver(config, clock=clock, sleep=sleep)


def create_directory_twin(
    path: Path | str,
    capture_interval_s: float = 2.0,
) -> DigitalTwinTetherDriver:
    """Twin that "shoots" the files of a folder one by one.

    Args:
        path: Folder of sample images (JPEG, CR2, ...).
        capture_interval_s: Seconds between simulated captures.
    """
    config = DigitalTwinConfig(
        image_source=ImageSource.DIRECTORY,
        image_path=Path(path),
        capture_interval_s=capture_interval_s,
    )
    return DigitalTwinTetherDriver(config)
