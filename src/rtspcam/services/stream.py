"""FFmpeg capture-to-RTSP publisher.

Logging Strategy:
    DEBUG - Command construction, progress lines
    INFO  - Stream start/stop
    ERROR - ffmpeg error lines (via the supervisor)
"""
from __future__ import annotations

import logging
import signal
from typing import Optional

from ..config.ffmpeg_defaults import (
    DEFAULT_CAPTURE_BACKEND,
    STREAM_ERROR_MARKER,
    STREAM_NOISE_MARKER,
    STREAM_READY_MARKERS,
)
from ..models.device import Device
from ..models.process import LineVerdict, ProcessHandle, ProcessState, ReadinessPolicy
from ..models.stream import StreamConfig
from ..utils.rtsp import build_capture_args
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


def classify_stream_line(line: str, stream_name: str, state: ProcessState) -> LineVerdict:
    """ffmpeg prints everything on stderr, so only content matters.

    "APP fields" warnings from MJPEG webcams mention errors but are
    harmless.
    """
    if any(marker in line for marker in STREAM_READY_MARKERS):
        return LineVerdict.READY
    if STREAM_ERROR_MARKER in line and STREAM_NOISE_MARKER not in line:
        return LineVerdict.ERROR
    return LineVerdict.IGNORE


class StreamController:
    """Run one ffmpeg publisher for a selected device."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        backend: str = DEFAULT_CAPTURE_BACKEND,
        readiness_timeout: float = 10.0,
        supervisor: Optional[ProcessSupervisor] = None
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.backend = backend
        self.readiness_timeout = readiness_timeout
        self.supervisor = supervisor or ProcessSupervisor("stream")

    @property
    def handle(self) -> ProcessHandle:
        return self.supervisor.handle

    @property
    def is_streaming(self) -> bool:
        return self.supervisor.state is ProcessState.RUNNING

    def build_command(self, device: Device, config: StreamConfig) -> list[str]:
        return build_capture_args(device, config, self.backend)

    async def start(self, device: Device, config: StreamConfig) -> ProcessHandle:
        """Start publishing and wait for ffmpeg to open its output.

        Raises:
            SupervisorStateError: A stream is already live
            SpawnError: ffmpeg could not be launched or exited early
            ReadinessTimeout: No output opened within the readiness window
        """
        logger.info(
            f"Starting stream from '{device.name}' at {config.video_size}@{config.fps}fps"
        )
        return await self.supervisor.start(
            self.ffmpeg_path,
            self.build_command(device, config),
            None,
            classify_stream_line,
            self.readiness_timeout,
            ReadinessPolicy.STRICT
        )

    def stop(self) -> bool:
        """Ask ffmpeg to finish cleanly (SIGINT), only while streaming."""
        if not self.is_streaming:
            logger.debug(f"Stream not running (state={self.supervisor.state.value}), nothing to stop")
            return False
        return self.supervisor.stop(signal.SIGINT)

    def abort(self) -> bool:
        """Signal an ffmpeg that never became ready (startup cut short)."""
        if self.supervisor.state is not ProcessState.STARTING:
            return False
        logger.info("Aborting stream that did not reach readiness")
        return self.supervisor.stop(signal.SIGINT)
