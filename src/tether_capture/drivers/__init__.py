"""Device drivers for tethered capture.

Supports two modes:
- HARDWARE: A real camera over USB through libgphoto2
- DIGITAL_TWIN: A simulated camera for testing without hardware

Use drivers.config to switch modes:
    from tether_capture.drivers import config
    config.use_digital_twin()  # or config.use_hardware()
"""

from tether_capture.drivers import cameras, config
from tether_capture.drivers.config import (
    DriverConfig,
    DriverFactory,
    DriverMode,
    configure,
    get_factory,
    use_digital_twin,
    use_hardware,
)

__all__ = [
    # Submodules
    "cameras",
    "config",
    # Configuration
    "DriverMode",
    "DriverConfig",
    "DriverFactory",
    "get_factory",
    "configure",
    "use_digital_twin",
    "use_hardware",
]
