"""FFmpeg parameter configuration for the capture/encode leg.

Single source of truth for the low-latency publish policy and the text
markers used to read ffmpeg's diagnostic output.

Low-latency policy:
    - Small capture buffer (-rtbufsize 10M) bounds input latency
    - x264 ultrafast + zerolatency favours latency over compression
    - Keyframe interval = frame rate (about one second glass-to-glass)
    - Scene-change keyframes disabled (-sc_threshold 0)
    - Baseline profile, level 3.0 (WebRTC-compatible)
    - RTSP over TCP for the publish leg
"""
from typing import Final

# ============================================================================
# Capture Backend
# ============================================================================

DEFAULT_CAPTURE_BACKEND: Final[str] = "dshow"
"""DirectShow capture backend (Windows USB cameras)."""

CAPTURE_BUFFER_SIZE: Final[str] = "10M"
CAPTURE_SOURCE_CODEC: Final[str] = "mjpeg"

# ============================================================================
# Encoder Parameters
# ============================================================================

ENCODER_PARAMS: Final[list[str]] = [
    '-vcodec', 'libx264',
    '-profile:v', 'baseline',
    '-level', '3.0',
    '-preset', 'ultrafast',
    '-tune', 'zerolatency',
    '-b:v', '2000k',
    '-maxrate', '2000k',
    '-bufsize', '1000k',
]
"""Codec, preset and rate control. GOP flags are appended per frame rate."""

PIXEL_FORMAT_PARAMS: Final[list[str]] = ['-sc_threshold', '0', '-pix_fmt', 'yuv420p']

OUTPUT_PARAMS: Final[list[str]] = ['-f', 'rtsp', '-rtsp_transport', 'tcp']
"""Reliable transport for the publish leg."""

# ============================================================================
# Output Markers
# ============================================================================

VIDEO_CAPABILITY_MARKER: Final[str] = "(video)"
"""Device listing lines for video inputs carry this token."""

ALIAS_NAME_MARKER: Final[str] = "@device_"
"""Alternative-name lines repeat a device under its moniker path."""

STREAM_READY_MARKERS: Final[tuple[str, ...]] = ("Stream mapping:", "Output #0", "rtsp://")
"""Any of these on ffmpeg's output means the publish leg is established."""

STREAM_ERROR_MARKER: Final[str] = "Error"

STREAM_NOISE_MARKER: Final[str] = "APP fields"
"""Harmless MJPEG decoder warnings that also contain 'Error'."""


def gop_params(fps: int) -> list[str]:
    """Keyframe interval pinned to the frame rate."""
    return ['-g', str(fps), '-keyint_min', str(fps)]
