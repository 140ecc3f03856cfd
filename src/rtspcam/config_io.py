"""Settings loading and atomic YAML writes.

Settings sources, lowest to highest precedence:
    1. AppSettings defaults
    2. Optional YAML file (--config or RTSPCAM_CONFIG)
    3. Environment variables (RTSP_PORT, RTSP_USERNAME, ...)
    4. CLI overrides (dotted keys, e.g. "stream.fps")

Atomic Writes:
    1. Write to temp file in the target directory
    2. Atomic rename (POSIX) or best-effort (Windows)
    3. A crash mid-write never leaves a truncated file behind

Logging Strategy:
    DEBUG - Sources applied, file operations
    INFO  - Settings file in use
    ERROR - YAML parsing, I/O failures
"""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Final, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .config.ffmpeg_defaults import DEFAULT_CAPTURE_BACKEND
from .errors import ConfigurationError
from .models.stream import ServerConfig
from .utils.validation import validate_host

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

CONFIG_ENV_VAR: Final[str] = "RTSPCAM_CONFIG"
"""Environment variable naming the YAML settings file."""

ENV_OVERRIDES: Final[dict[str, tuple[str, ...]]] = {
    "FFMPEG_PATH": ("ffmpeg_path",),
    "CAPTURE_BACKEND": ("capture_backend",),
    "RTSP_PORT": ("server", "listen_port"),
    "RTP_PORT": ("server", "rtp_port"),
    "RTCP_PORT": ("server", "rtcp_port"),
    "WEBRTC_PORT": ("server", "webrtc_port"),
    "RTSP_USERNAME": ("server", "credentials", "user"),
    "RTSP_PASSWORD": ("server", "credentials", "password"),
    "RTSP_PATH": ("server", "path_name"),
    "PUBLIC_IP": ("public_ip",),
    "MEDIAMTX_DIR": ("mediamtx_dir",),
    "MEDIAMTX_VERSION": ("mediamtx_version",),
    "STREAM_WIDTH": ("stream", "width"),
    "STREAM_HEIGHT": ("stream", "height"),
    "STREAM_FPS": ("stream", "fps"),
    "SETTLE_DELAY": ("settle_delay",),
    "SERVER_READY_TIMEOUT": ("server_ready_timeout",),
    "STREAM_READY_TIMEOUT": ("stream_ready_timeout",),
    "STATUS_PORT": ("status_port",),
}
"""Environment variable -> settings key path."""

# ============================================================================
# Settings Model
# ============================================================================

class StreamSettings(BaseModel):
    """Capture parameters; the target URL comes from the media server."""

    width: int = Field(default=1280, gt=0)
    height: int = Field(default=720, gt=0)
    fps: int = Field(default=60, gt=0, le=240)


class AppSettings(BaseModel):
    """Complete runtime settings."""

    ffmpeg_path: str = Field(default="ffmpeg", min_length=1)
    capture_backend: str = Field(default=DEFAULT_CAPTURE_BACKEND, min_length=1)

    server: ServerConfig = Field(default_factory=ServerConfig)
    stream: StreamSettings = Field(default_factory=StreamSettings)

    public_ip: Optional[str] = Field(
        default=None,
        description="External address embedded in the public viewer URL"
    )

    mediamtx_dir: Path = Field(default=Path("mediamtx"))
    mediamtx_version: str = Field(default="v1.9.3", pattern=r"^v\d+\.\d+\.\d+$")

    debug_output_path: Path = Field(default=Path("ffmpeg-debug-output.txt"))

    settle_delay: float = Field(default=3.0, ge=0)
    server_ready_timeout: float = Field(default=5.0, gt=0)
    stream_ready_timeout: float = Field(default=10.0, gt=0)

    status_port: Optional[int] = Field(default=None, ge=1, le=65535)
    status_host: str = Field(default="0.0.0.0")

    @field_validator("public_ip")
    @classmethod
    def validate_public_ip(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        is_valid, error = validate_host(value)
        if not is_valid:
            raise ValueError(error)
        return value


# ============================================================================
# Loading
# ============================================================================

def read_yaml_file(path: Path) -> dict[str, Any]:
    """Read a YAML mapping; an empty file yields {}.

    Raises:
        ConfigurationError: File missing, unreadable, malformed or not a mapping
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigurationError(f"Settings file not found: {path}") from e
    except yaml.YAMLError as e:
        logger.error(f"YAML parsing error in {path}: {e}")
        raise ConfigurationError(f"Malformed YAML in {path}", {"error": str(e)}) from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read settings file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid settings format in {path} (expected mapping)")

    return data


def _set_path(data: dict[str, Any], keys: tuple[str, ...], value: Any) -> None:
    node = data
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value


def load_settings(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None
) -> AppSettings:
    """Merge defaults, YAML file, environment and overrides into AppSettings.

    Args:
        path: YAML settings file; falls back to $RTSPCAM_CONFIG
        environ: Environment mapping (default: os.environ)
        overrides: Dotted keys to values; None values are skipped

    Raises:
        ConfigurationError: Unreadable file or invalid values
    """
    env = os.environ if environ is None else environ
    data: dict[str, Any] = {}

    if path is None and env.get(CONFIG_ENV_VAR):
        path = Path(env[CONFIG_ENV_VAR])

    if path is not None:
        logger.info(f"Settings file: {path}")
        data = read_yaml_file(Path(path))

    for env_name, keys in ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value not in (None, ""):
            _set_path(data, keys, value)
            logger.debug(f"Setting {'.'.join(keys)} from ${env_name}")

    for dotted, value in (overrides or {}).items():
        if value is not None:
            _set_path(data, tuple(dotted.split(".")), value)

    try:
        return AppSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            "Invalid settings",
            {"errors": [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]}
        ) from e


# ============================================================================
# Atomic Writes
# ============================================================================

def write_yaml_atomic(path: Path, data: Mapping[str, Any], header: str = "") -> Path:
    """Write a YAML document via temp file + rename.

    Args:
        path: Destination file
        data: Mapping to serialize (key order preserved)
        header: Optional comment block written before the document

    Raises:
        OSError: Write or rename failure (temp file removed)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_path = None
    try:
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.stem}_",
            suffix=".yml.tmp"
        )

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            if header:
                f.write(header)
            yaml.safe_dump(
                dict(data),
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True
            )

        _atomic_rename(temp_path, path)
        logger.debug(f"Wrote {path}")
        return path

    except OSError as e:
        logger.error(f"Write failed for {path}: {e}", exc_info=True)

        if temp_path and os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError as cleanup_err:
                logger.warning(f"Temp cleanup failed: {cleanup_err}")

        raise


def _atomic_rename(src: str | Path, dst: str | Path) -> None:
    """Atomic rename (POSIX) or best-effort (Windows)."""
    src_path = Path(src)
    dst_path = Path(dst)

    if os.name == "nt":
        # Windows: remove target first (not atomic)
        if dst_path.exists():
            dst_path.unlink()

    src_path.rename(dst_path)
