"""CLI entry point for tether-capture.

Provides the ``tether-capture`` console script: keep a tethered camera
connected and save every photo it takes into a directory as
``0.jpg``, ``1.cr2``, ... until interrupted.

Usage::

    # Save photos from the USB camera into ./tether
    tether-capture

    # Custom directory, debug logs
    tether-capture --output /data/shoot --verbose

    # No camera: simulated captures, JSON logs
    tether-capture --mode digital_twin --json-logs

Module Structure:
    - ``main()`` - CLI entry point; logging, signals, driver selection
    - ``run()`` - Consume the capture stream until cancelled
    - ``parse_args()`` - Command line definition
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from types import FrameType
from typing import Any

from tether_capture.data import CaptureWriter
from tether_capture.devices import EngineConfig, TetherEngine
from tether_capture.devices.tether import DEFAULT_STREAM_CAPACITY
from tether_capture.drivers import DriverConfig, DriverMode, configure, get_factory
from tether_capture.drivers.cameras import TetherDriver
from tether_capture.observability import TetherStats, configure_logging, get_logger

# Constants
PROG_NAME = "tether-capture"
DEFAULT_OUTPUT_DIR = "./tether"

logger = get_logger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        argv: Arguments without the program name; None reads sys.argv.

    Returns:
        argparse.Namespace with output, verbose, json_logs, mode,
        twin_image_dir, delete_after_download and capacity.

    Raises:
        SystemExit: On --help or invalid arguments.
    """
    parser = argparse.ArgumentParser(
        prog=PROG_NAME,
        description="Download every photo from a tethered camera as it is taken",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=DEFAULT_OUTPUT_DIR,
        help="photo download directory (default: ./tether)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose log output",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="emit logs as JSON lines",
    )
    parser.add_argument(
        "--mode",
        type=str,
        choices=[mode.value for mode in DriverMode],
        default=DriverMode.HARDWARE.value,
        help=(
            "Driver mode: 'hardware' for a USB camera (default), "
            "'digital_twin' for simulation"
        ),
    )
    parser.add_argument(
        "--twin-image-dir",
        type=str,
        default=None,
        help="folder of sample images replayed in digital_twin mode",
    )
    parser.add_argument(
        "--delete-after-download",
        action="store_true",
        help="remove each photo from the camera's card once downloaded",
    )
    parser.add_argument(
        "--capacity",
        type=int,
        default=DEFAULT_STREAM_CAPACITY,
        help="photos buffered before the camera side waits (default: 16)",
    )
    return parser.parse_args(argv)


def run(
    driver: TetherDriver,
    output_dir: Path,
    cancel: threading.Event,
    engine_config: EngineConfig | None = None,
    stats: TetherStats | None = None,
) -> int:
    """Stream captures from ``driver`` into ``output_dir`` until cancelled.

    Write failures are logged and skipped; the engine keeps running.

    Returns:
        Exit code 0 once the stream has ended.
    """
    stats = stats or TetherStats()
    writer = CaptureWriter(output_dir)
    engine = TetherEngine(driver, config=engine_config, stats=stats)

    stream = engine.start(cancel)
    for capture in stream:
        started = time.monotonic()
        path = writer.write(capture)
        if path is None:
            continue
        logger.info(
            "downloaded and saved photo",
            file=str(path),
            duration_ms=round((time.monotonic() - started) * 1000.0, 3),
        )

    engine.join()
    logger.info("tether summary", **stats.get_summary().to_dict())
    return 0


def _install_signal_handlers(
    cancel: threading.Event,
) -> dict[int, Callable[[int, FrameType | None], Any] | int | None]:
    """Route SIGINT and SIGTERM to ``cancel``; return the previous handlers."""

    def _handle(signum: int, frame: FrameType | None) -> None:
        logger.debug("tether will stop because of signal", signal=signum)
        cancel.set()

    previous: dict[int, Callable[[int, FrameType | None], Any] | int | None] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handle)
    return previous


def _restore_signal_handlers(
    previous: dict[int, Callable[[int, FrameType | None], Any] | int | None],
) -> None:
    """Reinstall handlers saved by _install_signal_handlers().

    A handler that was not installed from Python is reported as None and
    is replaced by the default action.
    """
    for signum, handler in previous.items():
        signal.signal(signum, signal.SIG_DFL if handler is None else handler)


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point for tether-capture.

    Returns:
        0 after a clean shutdown, 1 if the output directory cannot be
        created.

    Example:
        >>> # Installed as console script:
        >>> # tether-capture --output ./shoot --verbose
    """
    args = parse_args(argv)

    configure_logging(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        json_format=args.json_logs,
        force=True,
    )

    configure(
        DriverConfig(
            mode=DriverMode(args.mode),
            output_dir=Path(args.output),
            twin_image_dir=Path(args.twin_image_dir) if args.twin_image_dir else None,
        )
    )
    factory = get_factory()

    output_dir = factory.config.output_dir
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(
            "failed to create output directory", path=str(output_dir), error=str(e)
        )
        return 1

    driver = factory.create_tether_driver()
    engine_config = EngineConfig(
        stream_capacity=args.capacity,
        delete_after_download=args.delete_after_download,
    )

    cancel = threading.Event()
    previous = _install_signal_handlers(cancel)
    try:
        return run(driver, output_dir, cancel, engine_config=engine_config)
    finally:
        _restore_signal_handlers(previous)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
