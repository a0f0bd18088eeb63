"""Headless command-line host for the MaD Control core."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from .config import Config, load_config
from .device import ConsoleTransport, Controller
from .infra import MadControlError, configure_logging, install_exception_hook

logger = logging.getLogger("app.main")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MaD tensile tester host controller (headless).")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a YAML/JSON configuration file.",
    )
    parser.add_argument("--list-ports", action="store_true", help="List serial ports and exit.")
    parser.add_argument("--port", type=str, default=None, help="Serial port of the instrument.")
    parser.add_argument("--baud", type=int, default=None, help="Baud rate (defaults to the configured value).")
    parser.add_argument("--gcode", type=Path, default=None, help="Stream the G-code lines of FILE.")
    parser.add_argument("--flash", type=Path, default=None, help="Flash firmware image FILE.")
    parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="Seconds to keep monitoring the device after the requested action.",
    )
    return parser.parse_args(argv)


def run(controller: Controller, args: argparse.Namespace) -> int:
    if args.list_ports:
        for port in controller.list_ports():
            print(port)
        return 0

    port = args.port or controller.config.serial.port
    if not port:
        logger.error("No serial port given; use --port or set serial.port in the config.")
        return 2

    controller.start()
    try:
        message = controller.connect(port, args.baud)
        logger.info(message)
        exit_code = 0

        if args.gcode is not None:
            result = controller.stream_gcode(args.gcode.read_text(encoding="utf-8"))
            logger.info("G-code stream result: %s", result)
            exit_code = 0 if result["success"] else 1

        if args.flash is not None:
            result = controller.flash_firmware(args.flash)
            logger.info("Firmware flash result: %s", result)
            exit_code = 0 if result["success"] else 1

        if args.duration > 0:
            logger.info("Monitoring device for %.1f s", args.duration)
            time.sleep(args.duration)
        return exit_code
    except KeyboardInterrupt:
        logger.info("Interrupted by user (Ctrl+C).")
        return 130
    except MadControlError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        controller.stop()
        logger.info("Shutdown complete.")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config) if args.config is not None else Config()
    except Exception as exc:
        print(f"Cannot read configuration: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.logging)
    install_exception_hook()
    logger.info("Configuration loaded from %s", args.config or "built-in defaults")
    controller = Controller(config, ConsoleTransport())
    return run(controller, args)


if __name__ == "__main__":
    sys.exit(main())
