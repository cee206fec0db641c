"""Driver configuration and factory.

Switches between the libgphoto2 driver and the digital twin so the same
engine and CLI run against a real camera or a simulation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from tether_capture.drivers.cameras import (
    DigitalTwinConfig,
    DigitalTwinTetherDriver,
    ImageSource,
    TetherDriver,
)

# =============================================================================
# Constants
# =============================================================================

#: Default download directory, matching the CLI's --output default.
DEFAULT_OUTPUT_DIR = Path("./tether")

#: Seconds between simulated captures in digital twin mode.
DEFAULT_TWIN_CAPTURE_INTERVAL_S = 2.0


class DriverMode(Enum):
    """Driver mode selection."""

    HARDWARE = "hardware"  # libgphoto2 camera over USB
    DIGITAL_TWIN = "digital_twin"  # Simulated camera


@dataclass
class DriverConfig:
    """Configuration for driver selection.

    Attributes:
        mode: HARDWARE for a USB camera, DIGITAL_TWIN for simulation.
        output_dir: Directory captures are written to.
        twin_image_dir: Folder of sample images for the twin (None renders a
            synthetic test pattern instead).
        twin_capture_interval_s: Seconds between simulated shutter presses.
    """

    mode: DriverMode = DriverMode.HARDWARE
    output_dir: Path = DEFAULT_OUTPUT_DIR
    twin_image_dir: Path | None = None
    twin_capture_interval_s: float = DEFAULT_TWIN_CAPTURE_INTERVAL_S


class DriverFactory:
    """Creates the tether driver for the configured mode.

    Thread Safety:
        Not thread-safe. Configure once at startup before the engine thread
        starts.
    """

    def __init__(self, config: DriverConfig | None = None):
        """Store the configuration; drivers are created on demand.

        Args:
            config: Driver settings. None uses DriverConfig() defaults
                (hardware mode).

        Example:
            >>> factory = DriverFactory(DriverConfig(mode=DriverMode.DIGITAL_TWIN))
            >>> driver = factory.create_tether_driver()
        """
        self.config = config or DriverConfig()

    def create_tether_driver(self) -> TetherDriver:
        """Create the driver for self.config.mode.

        HARDWARE imports the libgphoto2 binding at this point, so digital
        twin runs never need it.

        Returns:
            GPhotoTetherDriver in HARDWARE mode, DigitalTwinTetherDriver in
            DIGITAL_TWIN mode (DIRECTORY source when twin_image_dir is set,
            SYNTHETIC otherwise).

        Raises:
            ImportError: If the gphoto2 package is unavailable in HARDWARE
                mode.
        """
        if self.config.mode == DriverMode.HARDWARE:
            from tether_capture.drivers.cameras.gphoto import GPhotoTetherDriver

            return GPhotoTetherDriver()

        twin_config = DigitalTwinConfig(
            image_source=ImageSource.DIRECTORY
            if self.config.twin_image_dir
            else ImageSource.SYNTHETIC,
            image_path=self.config.twin_image_dir,
            capture_interval_s=self.config.twin_capture_interval_s,
        )
        return DigitalTwinTetherDriver(twin_config)


# =============================================================================
# Global Singleton
# =============================================================================
# Not thread-safe: configure once at startup before the engine thread runs.

_factory: DriverFactory | None = None


def get_factory() -> DriverFactory:
    """Return the global factory, creating a default one on first access."""
    global _factory
    if _factory is None:
        _factory = DriverFactory()
    return _factory


def configure(config: DriverConfig) -> None:
    """Replace the global factory with one built from ``config``.

    Example:
        >>> configure(DriverConfig(mode=DriverMode.DIGITAL_TWIN,
        ...                        output_dir=Path("/data/shoot")))
    """
    global _factory
    _factory = DriverFactory(config)


def use_digital_twin(preserve_config: bool = False) -> None:
    """Switch the global factory to simulation.

    Args:
        preserve_config: Keep output_dir and twin settings from the current
            factory instead of resetting to defaults.
    """
    if preserve_config:
        configure(replace(get_factory().config, mode=DriverMode.DIGITAL_TWIN))
    else:
        configure(DriverConfig(mode=DriverMode.DIGITAL_TWIN))


def use_hardware(preserve_config: bool = False) -> None:
    """Switch the global factory to the libgphoto2 driver.

    Args:
        preserve_config: Keep output_dir and twin settings from the current
            factory instead of resetting to defaults.
    """
    if preserve_config:
        configure(replace(get_factory().config, mode=DriverMode.HARDWARE))
    else:
        configure(DriverConfig(mode=DriverMode.HARDWARE))
