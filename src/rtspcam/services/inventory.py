"""Capture device discovery through ffmpeg.

ffmpeg prints the device inventory as log output while failing on a
dummy input, so the listing run always exits non-zero and its text is
the only result:

    [dshow @ 000001] "Integrated Webcam" (video)
    [dshow @ 000001]   Alternative name "@device_pnp_\\\\?\\usb#vid_0c45..."
    [dshow @ 000001] "Microphone (Realtek Audio)" (audio)

Only lines carrying the video marker count; alias lines and duplicate
names are dropped. When nothing qualifies, the raw text is written to a
debug file for troubleshooting. A listing that hangs is killed after a
timeout; whatever it printed so far is still parsed and saved.

Logging Strategy:
    DEBUG - Commands, per-line decisions
    INFO  - Devices found
    WARN  - Empty inventory, debug file location
    ERROR - ffmpeg missing or hung, debug file write failures
"""
from __future__ import annotations

import asyncio
import logging
import re
import subprocess
from pathlib import Path
from typing import Final, Optional

from .. import metrics
from ..config.ffmpeg_defaults import (
    ALIAS_NAME_MARKER,
    DEFAULT_CAPTURE_BACKEND,
    VIDEO_CAPABILITY_MARKER,
)
from ..errors import ToolUnavailable
from ..models.device import Device
from ..utils.rtsp import build_listing_command, build_version_command
from .supervisor import READ_CHUNK_SIZE, Spawner

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

DEVICE_LINE_PATTERN: Final[re.Pattern[str]] = re.compile(r'\[[^\]]*\]\s+"([^"]+)"')
"""[<tag>] "<name>" with the name captured."""

DEFAULT_PROBE_TIMEOUT: Final[float] = 5.0
"""Seconds allowed for ``ffmpeg -version``."""

DEFAULT_LISTING_TIMEOUT: Final[float] = 15.0
"""Seconds allowed for the device listing run."""

FFMPEG_REMEDIATION: Final[str] = (
    "Install ffmpeg and make sure it is on PATH, or point FFMPEG_PATH at the binary. "
    "Download: https://ffmpeg.org/download.html"
)

LISTING_TIMEOUT_REMEDIATION: Final[str] = (
    "The camera or driver may be busy. Close other applications using the camera "
    "and try again, or raise the listing timeout."
)

# ============================================================================
# Parsing
# ============================================================================

def parse_device_listing(text: str) -> list[Device]:
    """Extract video devices from ffmpeg's listing output.

    A line qualifies when it contains ``(video)`` and a quoted name after
    a bracketed tag. Names containing ``@device_`` are alias identifiers
    and are skipped. Duplicate names keep their first position.

    Example:
        >>> parse_device_listing('[dshow @ 0x1] "USB Cam" (video)')
        [Device(index=0, name='USB Cam', raw_name='USB Cam')]
    """
    devices: list[Device] = []
    seen: set[str] = set()

    for line in text.splitlines():
        if VIDEO_CAPABILITY_MARKER not in line:
            continue

        match = DEVICE_LINE_PATTERN.search(line)
        if not match:
            continue

        name = match.group(1).strip()
        if not name:
            continue
        if ALIAS_NAME_MARKER in name:
            logger.debug(f"Skipping alias: {name}")
            continue
        if name in seen:
            continue

        seen.add(name)
        devices.append(Device(index=len(devices), name=name, raw_name=name))

    return devices


# ============================================================================
# Inventory
# ============================================================================

class DeviceInventory:
    """Probe ffmpeg and list capture devices.

    Stateless between calls; each enumerate() reruns the listing.
    """

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        backend: str = DEFAULT_CAPTURE_BACKEND,
        debug_output_path: Path = Path("ffmpeg-debug-output.txt"),
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        listing_timeout: float = DEFAULT_LISTING_TIMEOUT,
        spawn: Optional[Spawner] = None
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.backend = backend
        self.debug_output_path = Path(debug_output_path)
        self.probe_timeout = probe_timeout
        self.listing_timeout = listing_timeout
        self._spawn: Spawner = spawn or asyncio.create_subprocess_exec

    async def probe(self) -> bool:
        """Check that ffmpeg runs.

        Returns:
            True if ``ffmpeg -version`` exits 0 within the probe timeout
        """
        cmd = build_version_command(self.ffmpeg_path)
        logger.debug(f"Probing: {' '.join(cmd)}")

        try:
            process = await self._spawn(
                *cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE
            )
        except OSError as e:
            logger.debug(f"Probe failed to launch {self.ffmpeg_path}: {e}")
            return False

        try:
            await asyncio.wait_for(process.communicate(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Probe timeout after {self.probe_timeout}s")
            process.kill()
            await process.wait()
            return False

        if process.returncode != 0:
            logger.debug(f"Probe exited with code {process.returncode}")
            return False

        return True

    async def enumerate(self) -> list[Device]:
        """List video capture devices.

        Returns:
            Devices in first-seen order; empty when none qualify

        Raises:
            ToolUnavailable: ffmpeg is missing or broken, or the listing hung
                without printing any device
        """
        if not await self.probe():
            metrics.device_enumerations_total.labels(outcome="tool_unavailable").inc()
            logger.error(f"ffmpeg not available at '{self.ffmpeg_path}'")
            raise ToolUnavailable(
                f"ffmpeg not found or not working ({self.ffmpeg_path})",
                {"ffmpeg_path": self.ffmpeg_path, "remediation": FFMPEG_REMEDIATION}
            )

        text, timed_out = await self._run_listing()
        devices = parse_device_listing(text)

        metrics.devices_discovered.set(len(devices))
        if not devices and timed_out:
            metrics.device_enumerations_total.labels(outcome="timeout").inc()
            self._write_debug_output(text)
            raise ToolUnavailable(
                f"ffmpeg did not finish listing devices within {self.listing_timeout}s",
                {
                    "ffmpeg_path": self.ffmpeg_path,
                    "timeout": self.listing_timeout,
                    "debug_output": str(self.debug_output_path),
                    "remediation": LISTING_TIMEOUT_REMEDIATION,
                }
            )
        if not devices:
            metrics.device_enumerations_total.labels(outcome="empty").inc()
            logger.warning("No video capture devices found")
            self._write_debug_output(text)
            return devices

        metrics.device_enumerations_total.labels(outcome="found").inc()
        logger.info(f"Found {len(devices)} video device(s): {', '.join(d.name for d in devices)}")
        return devices

    async def _run_listing(self) -> tuple[str, bool]:
        """Run the listing; returns (captured text, timed out)."""
        cmd = build_listing_command(self.ffmpeg_path, self.backend)
        logger.debug(f"Listing devices: {' '.join(cmd)}")

        try:
            process = await self._spawn(
                *cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT
            )
        except OSError as e:
            raise ToolUnavailable(
                f"ffmpeg could not be launched: {e}",
                {"ffmpeg_path": self.ffmpeg_path, "remediation": FFMPEG_REMEDIATION}
            ) from e

        chunks: list[bytes] = []

        async def collect() -> None:
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)
            await process.wait()

        timed_out = False
        try:
            await asyncio.wait_for(collect(), timeout=self.listing_timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"Device listing timed out after {self.listing_timeout}s")
            process.kill()
            await process.wait()
        else:
            # Non-zero exit is normal: the dummy input always fails
            logger.debug(f"Listing exited with code {process.returncode}")

        # Output read before a timeout is kept for parsing and the debug file
        return b"".join(chunks).decode("utf-8", errors="replace"), timed_out

    def _write_debug_output(self, text: str) -> None:
        try:
            self.debug_output_path.write_text(text, encoding="utf-8")
            logger.warning(f"Raw ffmpeg output saved to {self.debug_output_path}")
        except OSError as e:
            logger.error(f"Could not write {self.debug_output_path}: {e}")
