"""Command-line entry point.

Usage:
    rtspcam                        # detect, pick a camera, stream
    rtspcam --list-devices         # print the inventory and exit
    rtspcam --device 2 --fps 30    # second camera in the list, 30 fps
    rtspcam --status-port 8080     # also serve /health and /metrics

Exit status: 0 after Ctrl+C/SIGTERM, otherwise the exit code of the
failure (see rtspcam.errors.ExitCode).

Logging Strategy:
    INFO  - Version, selection
    ERROR - Fatal errors with remediation hints
    CRITICAL - Unexpected exceptions with stack traces
"""
from __future__ import annotations

import argparse
import asyncio
import functools
import logging
import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

from . import __version__
from .config_io import AppSettings, load_settings
from .errors import ConfigurationError, ExitCode, ParseEmpty, RtspCamError, exit_code_for
from .logging_config import configure_logging
from .models.device import Device
from .services.inventory import DeviceInventory
from .services.media_server import MediaServerController
from .services.orchestrator import Orchestrator
from .services.stream import StreamController

logger = logging.getLogger(__name__)

NO_DEVICES_REMEDIATION = (
    "Make sure a USB camera is connected, its driver is installed, "
    "and no other application is using it."
)

Prompt = Callable[[str], Awaitable[str]]

# ============================================================================
# Argument Parsing
# ============================================================================

def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("Value must be an integer") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError("Value must be positive")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rtspcam",
        description="Publish a USB camera as an RTSP stream through MediaMTX"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML settings file (default: $RTSPCAM_CONFIG)",
    )
    parser.add_argument(
        "--device",
        type=_positive_int,
        default=None,
        help="Camera number as shown by --list-devices (skips the prompt)",
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="Print detected cameras and exit",
    )
    parser.add_argument("--width", type=_positive_int, default=None, help="Capture width")
    parser.add_argument("--height", type=_positive_int, default=None, help="Capture height")
    parser.add_argument("--fps", type=_positive_int, default=None, help="Capture frame rate")
    parser.add_argument(
        "--public-ip",
        default=None,
        help="External address shown in the public viewer URL",
    )
    parser.add_argument(
        "--status-port",
        type=_positive_int,
        default=None,
        help="Serve /health and /metrics on this port",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        default=None,
        help="Overrides $LOG_LEVEL",
    )
    return parser


# ============================================================================
# Device Selection
# ============================================================================

def _resolve(future: asyncio.Future, result: Any = None, error: Optional[BaseException] = None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


async def prompt_line(text: str) -> str:
    """input() on a daemon thread so the event loop keeps running.

    A daemon thread (not the default executor) so that a pending prompt
    never holds up interpreter exit.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def read() -> None:
        try:
            line = input(text)
        except (EOFError, OSError) as e:
            loop.call_soon_threadsafe(functools.partial(_resolve, future, error=e))
        else:
            loop.call_soon_threadsafe(functools.partial(_resolve, future, line))

    threading.Thread(target=read, name="device-prompt", daemon=True).start()
    return await future


async def select_device(
    devices: Sequence[Device],
    preferred: Optional[int] = None,
    prompt: Prompt = prompt_line
) -> Device:
    """Pick the device to stream.

    Args:
        devices: Inventory result
        preferred: 1-based number from --device
        prompt: Line reader for the interactive menu

    Raises:
        ParseEmpty: No devices
        ConfigurationError: ``preferred`` out of range, or stdin closed
    """
    if not devices:
        raise ParseEmpty(
            "No video capture devices detected",
            {"remediation": NO_DEVICES_REMEDIATION}
        )

    count = len(devices)

    if preferred is not None:
        if not 1 <= preferred <= count:
            raise ConfigurationError(
                f"--device {preferred} is out of range (1-{count})",
                {"devices": [d.label for d in devices]}
            )
        return devices[preferred - 1]

    if count == 1:
        logger.info(f"Auto-selecting: {devices[0].name}")
        return devices[0]

    print("\nSelect a camera to stream:")
    for device in devices:
        print(f"  {device.label}")

    while True:
        try:
            answer = (await prompt(f"Camera [1-{count}]: ")).strip()
        except EOFError as e:
            raise ConfigurationError("No camera selected (stdin closed); use --device") from e

        if answer.isdigit() and 1 <= int(answer) <= count:
            return devices[int(answer) - 1]
        print(f"Enter a number between 1 and {count}")


# ============================================================================
# Wiring
# ============================================================================

def build_inventory(settings: AppSettings) -> DeviceInventory:
    return DeviceInventory(
        ffmpeg_path=settings.ffmpeg_path,
        backend=settings.capture_backend,
        debug_output_path=settings.debug_output_path
    )


def build_orchestrator(settings: AppSettings, preferred: Optional[int] = None) -> Orchestrator:
    """Assemble the controllers from settings."""
    server = MediaServerController(
        settings.server,
        settings.mediamtx_dir,
        public_ip=settings.public_ip,
        readiness_timeout=settings.server_ready_timeout,
        version=settings.mediamtx_version
    )
    stream = StreamController(
        ffmpeg_path=settings.ffmpeg_path,
        backend=settings.capture_backend,
        readiness_timeout=settings.stream_ready_timeout
    )
    return Orchestrator(
        build_inventory(settings),
        functools.partial(select_device, preferred=preferred),
        server,
        stream,
        stream_settings=settings.stream,
        settle_delay=settings.settle_delay,
        status_port=settings.status_port,
        status_host=settings.status_host
    )


async def list_devices(settings: AppSettings) -> int:
    devices = await build_inventory(settings).enumerate()
    if not devices:
        print("No video capture devices found.")
        print(NO_DEVICES_REMEDIATION)
        return ExitCode.NO_DEVICES

    for device in devices:
        print(device.label)
    return ExitCode.OK


async def run(settings: AppSettings, preferred: Optional[int] = None) -> int:
    orchestrator = build_orchestrator(settings, preferred)
    return await orchestrator.run()


# ============================================================================
# Entry Point
# ============================================================================

def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    logger.info(f"rtspcam {__version__}")

    overrides = {
        "stream.width": args.width,
        "stream.height": args.height,
        "stream.fps": args.fps,
        "public_ip": args.public_ip,
        "status_port": args.status_port,
    }

    try:
        settings = load_settings(args.config, overrides=overrides)

        if args.list_devices:
            return int(asyncio.run(list_devices(settings)))
        return int(asyncio.run(run(settings, args.device)))

    except KeyboardInterrupt:
        logger.info("Interrupted")
        return int(ExitCode.INTERRUPTED)

    except RtspCamError as e:
        logger.error(f"{e.code.value}: {e.message}")
        for line in e.details.get("errors", []):
            logger.error(f"  {line}")
        if e.details.get("remediation"):
            logger.error(e.details["remediation"])
        return int(exit_code_for(e))

    except Exception as e:
        logger.critical(f"Unexpected error: {e}", exc_info=True)
        return int(exit_code_for(e))
