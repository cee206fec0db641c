"""Tests for the tether-capture command line.

``run()`` is exercised end to end against a scripted digital twin;
``main()`` is tested for argument handling, logging setup and the
output-directory failure path with the engine run patched out.
"""

from __future__ import annotations

import json
import logging
import signal
import threading
from dataclasses import replace
from pathlib import Path
from unittest.mock import patch

import pytest

from tether_capture import cli
from tether_capture.devices import EngineConfig
from tether_capture.drivers import DriverConfig, DriverMode, configure, get_factory
from tether_capture.drivers.cameras import (
    DigitalTwinTetherDriver,
    TwinEvent,
    create_scripted_twin,
)
from tether_capture.observability import TetherStats


def _cancel_after_polls(cancel: threading.Event, polls: int):
    def hook(poll_number: int) -> None:
        if poll_number >= polls:
            cancel.set()

    return hook


class TestParseArgs:
    def test_defaults(self):
        args = cli.parse_args([])

        assert args.output == "./tether"
        assert args.verbose is False
        assert args.json_logs is False
        assert args.mode == "hardware"
        assert args.twin_image_dir is None
        assert args.delete_after_download is False
        assert args.capacity == 16

    def test_all_options(self):
        args = cli.parse_args(
            [
                "--output",
                "/data/shoot",
                "--verbose",
                "--json-logs",
                "--mode",
                "digital_twin",
                "--twin-image-dir",
                "/samples",
                "--delete-after-download",
                "--capacity",
                "4",
            ]
        )

        assert args.output == "/data/shoot"
        assert args.verbose and args.json_logs and args.delete_after_download
        assert args.mode == "digital_twin"
        assert args.twin_image_dir == "/samples"
        assert args.capacity == 4

    def test_invalid_mode(self):
        with pytest.raises(SystemExit):
            cli.parse_args(["--mode", "usb"])


class TestRun:
    def test_end_to_end_jpeg_jpeg_raw(self, tmp_path: Path, log_stream):
        """Verifies the full pipeline writes 0.jpg, 1.jpg, 2.cr2.

        Arrangement:
        1. Twin scripted with two JPEGs and one CR2, then timeouts.
        2. The fourth poll sets the cancellation event.

        Action:
        cli.run() until the stream ends.

        Assertion Strategy:
        - Exactly three files with the scripted bytes and extensions.
        - One "downloaded and saved photo" log line per file.
        - Exit code 0 and a stats summary line.
        """
        cancel = threading.Event()
        driver = create_scripted_twin(
            [
                TwinEvent.file(b"\xff\xd8first", "image/jpeg"),
                TwinEvent.file(b"\xff\xd8second", "image/jpeg"),
                TwinEvent.file(b"II*\x00raw", "image/x-canon-cr2"),
            ],
            timeout_scale=0.0,
            on_poll=_cancel_after_polls(cancel, 4),
        )
        stats = TetherStats()

        code = cli.run(driver, tmp_path, cancel, stats=stats)

        assert code == 0
        assert sorted(p.name for p in tmp_path.iterdir()) == [
            "0.jpg",
            "1.jpg",
            "2.cr2",
        ]
        assert (tmp_path / "0.jpg").read_bytes() == b"\xff\xd8first"
        assert (tmp_path / "1.jpg").read_bytes() == b"\xff\xd8second"
        assert (tmp_path / "2.cr2").read_bytes() == b"II*\x00raw"

        output = log_stream.getvalue()
        assert output.count("downloaded and saved photo") == 3
        assert "tether summary" in output
        assert stats.get_summary().captures == 3
        assert driver.counters.opens == driver.counters.closes

    def test_write_failure_keeps_consuming(self, tmp_path: Path, log_stream):
        """A capture that cannot be written is skipped; later ones still land."""
        cancel = threading.Event()
        driver = create_scripted_twin(
            [TwinEvent.file(b"a"), TwinEvent.file(b"b")],
            timeout_scale=0.0,
            on_poll=_cancel_after_polls(cancel, 3),
        )
        (tmp_path / "0.jpg").mkdir()

        code = cli.run(driver, tmp_path, cancel)

        assert code == 0
        assert (tmp_path / "0.jpg").is_dir()
        assert "failed to write image to file" in log_stream.getvalue()
        assert log_stream.getvalue().count("downloaded and saved photo") == 0

    def test_engine_config_is_applied(self, tmp_path: Path):
        cancel = threading.Event()
        driver = create_scripted_twin(
            [TwinEvent.file(b"a")],
            timeout_scale=0.0,
            on_poll=_cancel_after_polls(cancel, 2),
        )

        cli.run(
            driver,
            tmp_path,
            cancel,
            engine_config=EngineConfig(delete_after_download=True),
        )

        assert driver.counters.deletes == 1


class TestMain:
    def test_output_dir_failure_returns_1(self, tmp_path: Path, capsys):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")

        code = cli.main(["--output", str(blocker / "sub")])

        assert code == 1
        assert "failed to create output directory" in capsys.readouterr().err

    def test_digital_twin_mode_wires_everything(self, tmp_path: Path):
        """main() configures the factory, logging and signals, then runs."""
        output = tmp_path / "out"
        seen = {}

        def fake_run(driver, output_dir, cancel, engine_config=None, stats=None):
            seen["driver"] = driver
            seen["output_dir"] = output_dir
            seen["config"] = engine_config
            seen["sigint"] = signal.getsignal(signal.SIGINT)
            seen["cancel"] = cancel
            return 0

        previous = signal.getsignal(signal.SIGINT)
        with patch.object(cli, "run", side_effect=fake_run):
            code = cli.main(
                [
                    "--output",
                    str(output),
                    "--mode",
                    "digital_twin",
                    "--capacity",
                    "3",
                    "--delete-after-download",
                    "--verbose",
                ]
            )

        assert code == 0
        assert output.is_dir()
        assert isinstance(seen["driver"], DigitalTwinTetherDriver)
        assert seen["output_dir"] == output
        assert seen["config"].stream_capacity == 3
        assert seen["config"].delete_after_download is True
        assert get_factory().config.mode == DriverMode.DIGITAL_TWIN
        assert logging.getLogger("tether_capture").level == logging.DEBUG

        # The installed handler sets the cancellation event; the previous
        # handler is restored afterwards.
        seen["sigint"](signal.SIGINT, None)
        assert seen["cancel"].is_set()
        assert signal.getsignal(signal.SIGINT) == previous

    def test_output_dir_comes_from_driver_config(self, tmp_path: Path):
        """The directory run() writes to is the one held by the factory."""
        requested = tmp_path / "requested"
        configured = tmp_path / "configured"

        def configure_elsewhere(config: DriverConfig) -> None:
            configure(replace(config, output_dir=configured))

        with (
            patch.object(cli, "configure", side_effect=configure_elsewhere),
            patch.object(cli, "run", return_value=0) as run,
        ):
            code = cli.main(
                ["--output", str(requested), "--mode", "digital_twin"]
            )

        assert code == 0
        assert configured.is_dir()
        assert not requested.exists()
        assert run.call_args.args[1] == configured
        assert get_factory().config.output_dir == configured

    def test_json_logs_and_default_level(self, tmp_path: Path, capsys):
        with patch.object(cli, "run", return_value=0):
            code = cli.main(
                ["--output", str(tmp_path), "--mode", "digital_twin", "--json-logs"]
            )
        assert code == 0
        assert logging.getLogger("tether_capture").level == logging.WARNING

        cli.logger.warning("probe", value=1)
        line = capsys.readouterr().err.strip().splitlines()[-1]
        assert json.loads(line)["value"] == 1


class TestSignalHandlers:
    def test_restore_reinstalls_saved_handlers(self):
        def saved(signum, frame):
            pass

        with patch.object(cli.signal, "signal") as set_handler:
            cli._restore_signal_handlers(
                {signal.SIGINT: saved, signal.SIGTERM: signal.SIG_IGN}
            )

        assert set_handler.call_args_list == [
            ((signal.SIGINT, saved),),
            ((signal.SIGTERM, signal.SIG_IGN),),
        ]

    def test_unknown_previous_handler_restores_default(self):
        """A handler Python did not install comes back as None; use SIG_DFL."""
        with patch.object(cli.signal, "signal") as set_handler:
            cli._restore_signal_handlers({signal.SIGTERM: None})

        set_handler.assert_called_once_with(signal.SIGTERM, signal.SIG_DFL)

    def test_main_restores_default_when_previous_was_none(self, tmp_path: Path):
        installed = {}

        def fake_signal(signum, handler):
            previous = installed.get(signum)
            installed[signum] = handler
            return previous

        with (
            patch.object(cli.signal, "signal", side_effect=fake_signal),
            patch.object(cli, "run", return_value=0),
        ):
            code = cli.main(["--output", str(tmp_path), "--mode", "digital_twin"])

        assert code == 0
        assert installed == {
            signal.SIGINT: signal.SIG_DFL,
            signal.SIGTERM: signal.SIG_DFL,
        }
