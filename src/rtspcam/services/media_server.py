"""MediaMTX lifecycle: acquisition, configuration, supervision, URLs.

Start sequence:
    1. ensure_binary()   - download and unpack the release once
    2. generate_config() - rewrite mediamtx.yml from ServerConfig
    3. supervisor.start  - FALLBACK readiness on "listener opened"

MediaMTX logs informational lines on stderr tagged "INF"; anything else
on stderr (and any "ERR" line) is reported as an error. A server that
never prints its listener line is assumed up after the readiness window.

Logging Strategy:
    DEBUG - Archive handling, config contents
    INFO  - Download, config written, URL templates
    WARN  - Fallback readiness (from the supervisor)
    ERROR - Acquisition failures, server error lines
"""
from __future__ import annotations

import asyncio
import logging
import os
import platform
import stat
import tarfile
import zipfile
from pathlib import Path
from typing import Any, Callable, Final, Optional

import httpx

from .. import metrics
from ..config_io import write_yaml_atomic
from ..errors import AcquisitionFailure, ConfigurationError
from ..models.process import LineVerdict, ProcessHandle, ProcessState, ReadinessPolicy
from ..models.stream import ServerConfig
from ..utils.rtsp import LOOPBACK_HOST, build_rtsp_url, build_webrtc_url
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

DEFAULT_MEDIAMTX_VERSION: Final[str] = "v1.9.3"

RELEASE_URL_TEMPLATE: Final[str] = (
    "https://github.com/bluenviron/mediamtx/releases/download/"
    "{version}/mediamtx_{version}_{asset}.{ext}"
)

PLATFORM_ASSETS: Final[dict[str, tuple[str, str]]] = {
    "windows_amd64": ("windows_amd64", "zip"),
    "linux_amd64": ("linux_amd64", "tar.gz"),
    "linux_arm64": ("linux_arm64v8", "tar.gz"),
    "darwin_amd64": ("darwin_amd64", "tar.gz"),
    "darwin_arm64": ("darwin_arm64", "tar.gz"),
}
"""Platform key -> (release asset suffix, archive extension)."""

MACHINE_ALIASES: Final[dict[str, str]] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

DOWNLOAD_TIMEOUT: Final[float] = 120.0
"""Seconds for the whole release download."""

SERVER_READY_MARKER: Final[str] = "listener opened"
SERVER_INFO_TAG: Final[str] = "INF"
SERVER_ERROR_TAG: Final[str] = "ERR"

PUBLIC_HOST_PLACEHOLDER: Final[str] = "your_public_ip"
WEBRTC_HOST: Final[str] = "localhost"

CONFIG_HEADER: Final[str] = "# Generated by rtspcam on every start; edits are overwritten.\n"

Downloader = Callable[[str, Path], None]

# ============================================================================
# Helper Functions
# ============================================================================

def detect_platform_key() -> str:
    """Current OS/arch as a PLATFORM_ASSETS key, e.g. "linux_amd64"."""
    system = platform.system().lower()
    arch = MACHINE_ALIASES.get(platform.machine().lower(), platform.machine().lower())
    return f"{system}_{arch}"


def release_url(version: str, platform_key: str) -> tuple[str, str]:
    """Release download URL and archive extension for a platform.

    Raises:
        AcquisitionFailure: No release archive for this platform
    """
    try:
        asset, ext = PLATFORM_ASSETS[platform_key]
    except KeyError:
        raise AcquisitionFailure(
            f"No MediaMTX release for platform '{platform_key}'",
            {"supported": sorted(PLATFORM_ASSETS)}
        ) from None
    return RELEASE_URL_TEMPLATE.format(version=version, asset=asset, ext=ext), ext


def download_file(url: str, dest: Path, timeout: float = DOWNLOAD_TIMEOUT) -> None:
    """Stream a URL to a file (GitHub release links redirect)."""
    with httpx.stream("GET", url, follow_redirects=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(dest, "wb") as f:
            for chunk in response.iter_bytes():
                f.write(chunk)


def extract_archive(archive: Path, dest: Path) -> None:
    if archive.name.endswith(".zip"):
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(dest)
        return

    with tarfile.open(archive, "r:gz") as tf:
        if hasattr(tarfile, "data_filter"):
            tf.extractall(dest, filter="data")
        else:
            tf.extractall(dest)


def build_server_config(config: ServerConfig) -> dict[str, Any]:
    """mediamtx.yml document for a ServerConfig.

    Only RTSP (plus RTP/RTCP) and WebRTC listen; the other protocols are
    switched off so their default ports stay free.
    """
    creds = config.credentials
    return {
        "rtspAddress": f":{config.listen_port}",
        "rtpAddress": f":{config.rtp_port}",
        "rtcpAddress": f":{config.rtcp_port}",
        "authMethod": "internal",
        "logLevel": "info",
        "rtmp": False,
        "hls": False,
        "srt": False,
        "api": False,
        "webrtc": True,
        "webrtcAddress": f":{config.webrtc_port}",
        "paths": {
            config.path_name: {
                "publishUser": creds.user,
                "publishPass": creds.password,
                "readUser": creds.user,
                "readPass": creds.password,
            }
        },
    }


def classify_server_line(line: str, stream_name: str, state: ProcessState) -> LineVerdict:
    if SERVER_READY_MARKER in line:
        return LineVerdict.READY
    if SERVER_ERROR_TAG in line:
        return LineVerdict.ERROR
    if stream_name == "stderr" and SERVER_INFO_TAG not in line:
        return LineVerdict.ERROR
    return LineVerdict.IGNORE


# ============================================================================
# Media Server Controller
# ============================================================================

class MediaServerController:
    """Own the MediaMTX binary, its config file and its process."""

    def __init__(
        self,
        config: ServerConfig,
        install_dir: Path,
        public_ip: Optional[str] = None,
        readiness_timeout: float = 5.0,
        version: str = DEFAULT_MEDIAMTX_VERSION,
        platform_key: Optional[str] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        downloader: Optional[Downloader] = None
    ) -> None:
        self.config = config
        self.install_dir = Path(install_dir)
        self.public_ip = public_ip
        self.readiness_timeout = readiness_timeout
        self.version = version
        self.platform_key = platform_key or detect_platform_key()
        self.supervisor = supervisor or ProcessSupervisor("server")
        self._downloader: Downloader = downloader or download_file

    @property
    def executable_path(self) -> Path:
        name = "mediamtx.exe" if self.platform_key.startswith("windows") else "mediamtx"
        return self.install_dir / name

    @property
    def config_path(self) -> Path:
        return self.install_dir / "mediamtx.yml"

    @property
    def handle(self) -> ProcessHandle:
        return self.supervisor.handle

    # ========================================================================
    # Acquisition
    # ========================================================================

    async def ensure_binary(self) -> Path:
        """Download and unpack MediaMTX unless the executable is present.

        Raises:
            AcquisitionFailure: Download, extraction or layout problem
        """
        executable = self.executable_path
        if executable.exists():
            metrics.mediamtx_acquisitions_total.labels(outcome="present").inc()
            logger.debug(f"MediaMTX present: {executable}")
            return executable

        url, ext = release_url(self.version, self.platform_key)
        archive = self.install_dir / f"mediamtx.{ext}"
        logger.info(f"MediaMTX not found, downloading {self.version} from {url}")

        try:
            self.install_dir.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(self._downloader, url, archive)
            logger.debug(f"Extracting {archive}")
            await asyncio.to_thread(extract_archive, archive, self.install_dir)
        except (
            httpx.HTTPError,
            httpx.StreamError,
            httpx.InvalidURL,
            OSError,
            zipfile.BadZipFile,
            tarfile.TarError
        ) as e:
            metrics.mediamtx_acquisitions_total.labels(outcome="failed").inc()
            logger.error(f"MediaMTX acquisition failed: {e}")
            raise AcquisitionFailure(
                f"Could not download MediaMTX {self.version}: {e}",
                {"url": url, "install_dir": str(self.install_dir)}
            ) from e
        finally:
            self._remove_archive(archive)

        if not executable.exists():
            metrics.mediamtx_acquisitions_total.labels(outcome="failed").inc()
            raise AcquisitionFailure(
                f"Archive did not contain {executable.name}",
                {"url": url, "install_dir": str(self.install_dir)}
            )

        if os.name != "nt":
            mode = executable.stat().st_mode
            executable.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        metrics.mediamtx_acquisitions_total.labels(outcome="downloaded").inc()
        logger.info(f"MediaMTX installed: {executable}")
        return executable

    @staticmethod
    def _remove_archive(archive: Path) -> None:
        try:
            archive.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove {archive}: {e}")

    # ========================================================================
    # Configuration
    # ========================================================================

    def generate_config(self) -> Path:
        """Rewrite mediamtx.yml from the current ServerConfig.

        Raises:
            ConfigurationError: The file could not be written
        """
        try:
            path = write_yaml_atomic(self.config_path, build_server_config(self.config), CONFIG_HEADER)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot write {self.config_path}: {e}",
                {"path": str(self.config_path)}
            ) from e

        logger.info(f"Wrote {path} (rtsp :{self.config.listen_port}, webrtc :{self.config.webrtc_port})")
        return path

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> ProcessHandle:
        """Acquire, configure and launch MediaMTX.

        Raises:
            AcquisitionFailure: Binary unavailable
            ConfigurationError: Config file not written
            SpawnError: Launch failed or server exited during startup
        """
        executable = await self.ensure_binary()
        config_path = self.generate_config()

        return await self.supervisor.start(
            executable,
            [config_path.name],
            self.install_dir,
            classify_server_line,
            self.readiness_timeout,
            ReadinessPolicy.FALLBACK
        )

    def stop(self) -> bool:
        return self.supervisor.stop()

    # ========================================================================
    # URL Templates
    # ========================================================================

    def publish_url(self) -> str:
        """Where the stream publishes (loopback, with credentials)."""
        creds = self.config.credentials
        return build_rtsp_url(
            creds.user, creds.password, LOOPBACK_HOST, self.config.listen_port, self.config.path_name
        )

    def view_url(self) -> str:
        """Local viewer URL; same address as the publish URL."""
        return self.publish_url()

    def public_url(
        self,
        public_ip: Optional[str] = None,
        channel: Optional[str] = "03",
        subtype: Optional[str] = "1"
    ) -> str:
        """Viewer URL for clients outside the host.

        The host falls back to the configured public IP, then a
        placeholder the user has to replace.
        """
        creds = self.config.credentials
        host = public_ip or self.public_ip or PUBLIC_HOST_PLACEHOLDER
        query = {
            key: value
            for key, value in (("channel", channel), ("subtype", subtype))
            if value is not None
        }
        return build_rtsp_url(
            creds.user, creds.password, host, self.config.listen_port, self.config.path_name, query
        )

    def webrtc_url(self) -> str:
        return build_webrtc_url(WEBRTC_HOST, self.config.webrtc_port, self.config.path_name)
