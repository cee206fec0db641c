"""Persist captures to a download directory.

Files are named ``<counter>.<ext>``: the counter starts at 0 and only
advances after a successful write, the extension comes from the MIME type
reported by the camera.

Example:
    writer = CaptureWriter(Path("./tether"))
    for capture in stream:
        path = writer.write(capture)
"""

from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING

from tether_capture.observability import get_logger

if TYPE_CHECKING:
    from tether_capture.devices.tether import Capture

logger = get_logger(__name__)

__all__ = ["CaptureWriter", "extension_for_mime"]

#: Extensions for camera MIME types the mimetypes registry gets wrong or
#: does not know.
_KNOWN_EXTENSIONS: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/x-canon-cr2": "cr2",
    "image/x-canon-cr3": "cr3",
    "image/x-canon-crw": "crw",
    "image/x-nikon-nef": "nef",
    "image/x-sony-arw": "arw",
    "image/x-fuji-raf": "raf",
    "image/x-adobe-dng": "dng",
    "image/tiff": "tif",
}

_UNKNOWN_EXTENSION = "bin"


def extension_for_mime(mime_type: str) -> str:
    """Map a MIME type to a file extension without the dot.

    Args:
        mime_type: MIME type such as 'image/jpeg'. Parameters after ';' and
            letter case are ignored.

    Returns:
        Extension such as 'jpg' or 'cr2'; 'bin' when unknown.

    Example:
        >>> extension_for_mime("image/x-canon-cr2")
        'cr2'
        >>> extension_for_mime("application/x-unknown")
        'bin'
    """
    normalized = mime_type.split(";", 1)[0].strip().lower()
    if normalized in _KNOWN_EXTENSIONS:
        return _KNOWN_EXTENSIONS[normalized]
    guessed = mimetypes.guess_extension(normalized) if normalized else None
    if guessed:
        return guessed.lstrip(".")
    return _UNKNOWN_EXTENSION


class CaptureWriter:
    """Writes captures to numbered files in one directory.

    Not thread-safe; used from the consumer thread only.
    """

    def __init__(self, output_dir: Path, start_index: int = 0) -> None:
        self._output_dir = Path(output_dir)
        self._counter = start_index

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    @property
    def counter(self) -> int:
        """Index the next successful write will use."""
        return self._counter

    def path_for(self, capture: Capture) -> Path:
        extension = extension_for_mime(capture.mime_type)
        return self._output_dir / f"{self._counter}.{extension}"

    def write(self, capture: Capture) -> Path | None:
        """Write one capture.

        A failure is logged and reported as None; the counter is left
        unchanged so the next capture reuses the index.

        Returns:
            Path written, or None if the write failed.
        """
        path = self.path_for(capture)
        try:
            path.write_bytes(capture.data)
        except OSError as e:
            logger.error("failed to write image to file", file=str(path), error=str(e))
            return None
        logger.debug("wrote image to file", file=str(path), size=len(capture.data))
        self._counter += 1
        return path

    def __repr__(self) -> str:
        return f"CaptureWriter({str(self._output_dir)!r}, counter={self._counter})"
