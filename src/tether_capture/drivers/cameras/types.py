"""Tether driver types: protocols, file handles and the error hierarchy.

Protocols:
    TetherDriver: Opens sessions against the (single) tethered camera.
    TetherSession: One open device connection; poll, fetch, delete, close.

Types:
    FileHandle: Location of a newly captured file on the device.

Exceptions:
    TetherError: Base class; keeps the native driver error code.
    OpenError: No device reachable or claimable.
    InitError: Device claimed but handshake/configuration failed.
    PollError: Event wait failed.
    FetchError: Notified file could not be downloaded.

The capture engine treats every error as opaque beyond its class.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import TracebackType
from typing import Protocol, runtime_checkable

__all__ = [
    "FileHandle",
    "TetherDriver",
    "TetherSession",
    "TetherError",
    "OpenError",
    "InitError",
    "PollError",
    "FetchError",
]


# =============================================================================
# Exceptions
# =============================================================================


class TetherError(Exception):
    """Base exception for tether driver failures.

    Attributes:
        code: Native driver error code (e.g. libgphoto2 GP_ERROR_*), or None
            when the failure did not come from the native library.
    """

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        if self.code is None:
            return base
        return f"{base} (code {self.code})"


class OpenError(TetherError):
    """Raised when no device session could be created."""

    pass


class InitError(TetherError):
    """Raised when the device was claimed but initialization failed."""

    pass


class PollError(TetherError):
    """Raised when waiting for a device event failed."""

    pass


class FetchError(TetherError):
    """Raised when a notified file could not be retrieved."""

    pass


# =============================================================================
# Value Types
# =============================================================================


@dataclass(frozen=True)
class FileHandle:
    """A file the camera reported as added.

    Attributes:
        folder: Device folder, e.g. '/store_00020001/DCIM/100CANON'.
        name: File name inside the folder, e.g. 'IMG_0042.JPG'.
    """

    folder: str
    name: str

    @property
    def path(self) -> str:
        return f"{self.folder.rstrip('/')}/{self.name}"


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class TetherSession(Protocol):  # pragma: no cover
    """Protocol for one open connection to a tethered camera.

    Implemented by GPhotoTetherSession and DigitalTwinTetherSession.
    A session is owned by exactly one thread at a time and is never shared
    with stream consumers.
    """

    def init(self) -> None:
        """Initialize the device (handshake, configuration).

        Raises:
            InitError: If the device rejects initialization.
        """
        ...

    def poll_for_file(self, timeout_ms: int) -> FileHandle | None:
        """Block up to ``timeout_ms`` for a "file added" notification.

        Events other than "file added" are consumed and ignored.

        Args:
            timeout_ms: Upper bound on the wait in milliseconds.

        Returns:
            FileHandle for the new file, or None if the wait timed out.

        Raises:
            PollError: If the device could not serve the wait.
        """
        ...

    def fetch(self, handle: FileHandle) -> tuple[bytes, str]:
        """Download a notified file into memory.

        Args:
            handle: File reported by poll_for_file().

        Returns:
            Tuple of (raw bytes, MIME type).

        Raises:
            FetchError: If the transfer failed.
        """
        ...

    def delete(self, handle: FileHandle) -> None:
        """Remove a file from the device's storage.

        Raises:
            TetherError: If the device refused; callers treat this as
                best-effort.
        """
        ...

    def close(self) -> None:
        """Release the device. Idempotent; never raises."""
        ...

    def __enter__(self) -> TetherSession:
        ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        ...


@runtime_checkable
class TetherDriver(Protocol):  # pragma: no cover
    """Protocol for creating tether sessions.

    Implemented by GPhotoTetherDriver (libgphoto2) and
    DigitalTwinTetherDriver (simulation).
    """

    def open(self) -> TetherSession:
        """Create a new, not yet initialized session.

        Returns:
            TetherSession; call init() before polling.

        Raises:
            OpenError: If no session could be created.
        """
        ...
