"""tether-capture - stream images from a tethered camera.

Layers:
    drivers: libgphoto2 and digital twin camera sessions
    devices: TetherEngine, the reconnecting capture engine
    data: CaptureWriter, files on disk
    observability: structured logging, diagnostics, statistics
"""

__version__ = "0.1.0"
