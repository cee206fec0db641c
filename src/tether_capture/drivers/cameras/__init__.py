"""Tethered camera drivers.

Protocols:
    TetherDriver: Opens sessions against the tethered camera
    TetherSession: init, poll for new files, fetch, delete, close

Implementations:
    GPhotoTetherDriver/GPhotoTetherSession: Real cameras via libgphoto2
        (import from tether_capture.drivers.cameras.gphoto; loaded lazily
        so simulation works on machines without libgphoto2)
    DigitalTwinTetherDriver/DigitalTwinTetherSession: Simulated camera

Errors:
    TetherError and its OpenError, InitError, PollError, FetchError
    subclasses, each carrying the native driver code.
"""

from __future__ import annotations

from tether_capture.drivers.cameras.twin import (
    DigitalTwinConfig,
    DigitalTwinTetherDriver,
    DigitalTwinTetherSession,
    ImageSource,
    TwinCounters,
    TwinEvent,
    TwinEventKind,
    create_directory_twin,
    create_scripted_twin,
)
from tether_capture.drivers.cameras.types import (
    FetchError,
    FileHandle,
    InitError,
    OpenError,
    PollError,
    TetherDriver,
    TetherError,
    TetherSession,
)

__all__ = [
    # Protocols
    "TetherDriver",
    "TetherSession",
    # Types
    "FileHandle",
    # Errors
    "TetherError",
    "OpenError",
    "InitError",
    "PollError",
    "FetchError",
    # Digital twin implementation
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
