"""Capture persistence.

Example:
    from pathlib import Path

    from tether_capture.data import CaptureWriter

    writer = CaptureWriter(Path("./tether"))
    writer.write(capture)  # ./tether/0.jpg
"""

from tether_capture.data.writer import CaptureWriter, extension_for_mime

__all__ = ["CaptureWriter", "extension_for_mime"]
