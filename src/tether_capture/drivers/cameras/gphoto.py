"""libgphoto2 Tether Driver - Real Hardware Implementation.

Wraps python-gphoto2 to drive a USB camera in tethered mode following the
TetherDriver / TetherSession protocols. Works with any camera libgphoto2
can talk to (most Canon, Nikon, Sony and Fujifilm bodies over PTP).

Classes:
    GPhotoTetherDriver: Creates sessions (context + camera object).
    GPhotoTetherSession: One open camera; event wait, download, delete.

Error mapping:
    gp.GPhoto2Error raised by the binding is re-raised as the TetherError
    subclass for the operation that failed, keeping the native code:
    camera creation -> OpenError, camera.init -> InitError,
    wait_for_event -> PollError, file_get / data access -> FetchError.

Example:
    from tether_capture.drivers.cameras.gphoto import GPhotoTetherDriver

    driver = GPhotoTetherDriver()
    with driver.open() as session:
        session.init()
        handle = session.poll_for_file(500)
        if handle is not None:
            data, mime_type = session.fetch(handle)
"""

from __future__ import annotations

from types import TracebackType
from typing import Any, final

import gphoto2 as gp

from tether_capture.drivers.cameras.types import (
    FetchError,
    FileHandle,
    InitError,
    OpenError,
    PollError,
    TetherError,
)
from tether_capture.observability import get_logger

logger = get_logger(__name__)

__all__ = [
    "GPhotoTetherDriver",
    "GPhotoTetherSession",
]

# MIME type reported when the binding returns an empty one.
_FALLBACK_MIME_TYPE = "application/octet-stream"


def _error_code(exc: Exception) -> int | None:
    return getattr(exc, "code", None)


@final
class GPhotoTetherSession:
    """One open libgphoto2 camera plus its GPContext.

    Created by GPhotoTetherDriver.open(). Not thread-safe; owned by the
    capture engine's producer thread.
    """

    __slots__ = ("_sdk", "_context", "_camera", "_initialized", "_closed")

    def __init__(self, sdk: Any, context: Any, camera: Any) -> None:
        """Wrap an already created camera object.

        Args:
            sdk: The gphoto2 module (or a stand-in exposing the same names).
            context: gp.Context used for every call on this camera.
            camera: gp.Camera created but not yet initialized.
        """
        self._sdk = sdk
        self._context = context
        self._camera = camera
        self._initialized = False
        self._closed = False

    def init(self) -> None:
        """Claim the camera over USB and run the PTP handshake.

        Raises:
            InitError: If libgphoto2 cannot initialize the camera (no camera
                attached, device busy, unsupported model). Carries the
                GP_ERROR_* code.
        """
        try:
            self._camera.init(self._context)
        except self._sdk.GPhoto2Error as e:
            raise InitError(
                f"Failed to initialize camera: {e}", code=_error_code(e)
            ) from e
        self._initialized = True
        logger.debug("Initialized camera")

    def poll_for_file(self, timeout_ms: int) -> FileHandle | None:
        """Wait up to timeout_ms for GP_EVENT_FILE_ADDED.

        Any other event (timeout, unknown, folder added, capture complete)
        returns None so the caller counts it as a miss.

        Args:
            timeout_ms: Wait bound passed to gp_camera_wait_for_event.

        Returns:
            FileHandle on a file-added event, else None.

        Raises:
            PollError: If the event wait itself failed.
        """
        try:
            event_type, event_data = self._camera.wait_for_event(
                timeout_ms, self._context
            )
        except self._sdk.GPhoto2Error as e:
            raise PollError(
                f"Failed to wait for camera event: {e}", code=_error_code(e)
            ) from e

        if event_type != self._sdk.GP_EVENT_FILE_ADDED:
            return None
        return FileHandle(folder=event_data.folder, name=event_data.name)

    def fetch(self, handle: FileHandle) -> tuple[bytes, str]:
        """Download a file into memory.

        Args:
            handle: File reported by poll_for_file().

        Returns:
            (bytes, MIME type) as reported by libgphoto2, e.g.
            'image/jpeg' or 'image/x-canon-cr2'.

        Raises:
            FetchError: If the transfer or data access failed.
        """
        try:
            camera_file = self._camera.file_get(
                handle.folder,
                handle.name,
                self._sdk.GP_FILE_TYPE_NORMAL,
                self._context,
            )
            data = bytes(camera_file.get_data_and_size())
            mime_type = camera_file.get_mime_type() or _FALLBACK_MIME_TYPE
        except self._sdk.GPhoto2Error as e:
            raise FetchError(
                f"Failed to get photo {handle.path}: {e}", code=_error_code(e)
            ) from e
        return data, mime_type

    def delete(self, handle: FileHandle) -> None:
        """Delete a file from the camera's card.

        Raises:
            TetherError: If libgphoto2 refused (read-only card, file gone).
        """
        try:
            self._camera.file_delete(handle.folder, handle.name, self._context)
        except self._sdk.GPhoto2Error as e:
            raise TetherError(
                f"Failed to delete {handle.path}: {e}", code=_error_code(e)
            ) from e

    def close(self) -> None:
        """Release the camera. Idempotent.

        gp_camera_exit is only called for an initialized camera; errors
        from it are logged since the device is often already gone.
        """
        if self._closed:
            return
        self._closed = True
        if not self._initialized:
            return
        try:
            self._camera.exit(self._context)
        except self._sdk.GPhoto2Error as e:
            logger.debug("Camera exit failed", error=str(e), code=_error_code(e))

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __enter__(self) -> GPhotoTetherSession:
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
        return f"GPhotoTetherSession({state}, initialized={self._initialized})"


@final
class GPhotoTetherDriver:
    """libgphoto2 driver for the first camera found on USB.

    Supports dependency injection of the binding for tests.

    Example:
        # Production use
        driver = GPhotoTetherDriver()

        # Testing with a fake module
        driver = GPhotoTetherDriver(sdk=fake_gphoto2)
    """

    __slots__ = ("_sdk",)

    def __init__(self, sdk: Any | None = None) -> None:
        """Create the driver. Never touches the device.

        Args:
            sdk: Object exposing Context, Camera, GPhoto2Error,
                GP_EVENT_FILE_ADDED and GP_FILE_TYPE_NORMAL. Defaults to the
                gphoto2 module.
        """
        self._sdk = sdk if sdk is not None else gp

    def open(self) -> GPhotoTetherSession:
        """Allocate a GPContext and a camera object.

        Returns:
            GPhotoTetherSession, not yet initialized.

        Raises:
            OpenError: If libgphoto2 could not allocate the camera.
        """
        try:
            context = self._sdk.Context()
            camera = self._sdk.Camera()
        except self._sdk.GPhoto2Error as e:
            raise OpenError(
                f"Failed to create camera: {e}", code=_error_code(e)
            ) from e
        logger.debug("Initialized libgphoto2 context")
        return GPhotoTetherSession(self._sdk, context, camera)

    def __repr__(self) -> str:
        return "GPhotoTetherDriver()"
