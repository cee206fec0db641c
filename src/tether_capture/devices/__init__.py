"""Logical device layer - the tethered capture engine."""

from tether_capture.devices.tether import (
    Capture,
    CaptureReader,
    CaptureStream,
    Clock,
    EngineConfig,
    FailureClass,
    IterationOutcome,
    StreamClosedError,
    SystemClock,
    TetherEngine,
)

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
