"""
Unit tests for settings loading and atomic YAML writes.

Every test passes an explicit environ mapping so the developer's real
environment never leaks into the result.
"""

from pathlib import Path

import pytest
import yaml

from rtspcam.config_io import AppSettings, load_settings, read_yaml_file, write_yaml_atomic
from rtspcam.errors import ConfigurationError


def write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


class TestDefaults:
    """Tests for built-in defaults."""

    def test_defaults_without_sources(self):
        """Should fall back to the stock publish setup."""
        settings = load_settings(environ={})

        assert settings.ffmpeg_path == "ffmpeg"
        assert settings.capture_backend == "dshow"
        assert settings.server.listen_port == 89
        assert settings.server.rtp_port == 8002
        assert settings.server.rtcp_port == 8003
        assert settings.server.webrtc_port == 8889
        assert settings.server.credentials.user == "user1"
        assert settings.server.path_name == "rtsp/streaming"
        assert (settings.stream.width, settings.stream.height, settings.stream.fps) == (1280, 720, 60)
        assert settings.public_ip is None
        assert settings.status_port is None
        assert settings.settle_delay == 3.0


class TestSources:
    """Tests for YAML, environment and override precedence."""

    def test_yaml_file_values(self, tmp_path):
        """Should read nested settings from YAML."""
        path = write(tmp_path / "rtspcam.yml", (
            "server:\n"
            "  listen_port: 8554\n"
            "  credentials:\n"
            "    user: cam\n"
            "    password: hunter2\n"
            "stream:\n"
            "  fps: 30\n"
        ))

        settings = load_settings(path, environ={})

        assert settings.server.listen_port == 8554
        assert settings.server.credentials.password == "hunter2"
        assert settings.stream.fps == 30
        assert settings.stream.width == 1280

    def test_config_path_from_environment(self, tmp_path):
        """Should use RTSPCAM_CONFIG when no path is given."""
        path = write(tmp_path / "from-env.yml", "ffmpeg_path: /usr/local/bin/ffmpeg\n")

        settings = load_settings(environ={"RTSPCAM_CONFIG": str(path)})

        assert settings.ffmpeg_path == "/usr/local/bin/ffmpeg"

    def test_environment_beats_yaml(self, tmp_path):
        """Should let environment variables override the file."""
        path = write(tmp_path / "rtspcam.yml", "server:\n  listen_port: 8554\n")

        settings = load_settings(path, environ={"RTSP_PORT": "9554", "FFMPEG_PATH": "ff"})

        assert settings.server.listen_port == 9554
        assert settings.ffmpeg_path == "ff"

    def test_overrides_beat_environment(self):
        """Should apply dotted CLI overrides last."""
        settings = load_settings(
            environ={"STREAM_FPS": "25"},
            overrides={"stream.fps": 15, "stream.width": None, "public_ip": "203.0.113.9"},
        )

        assert settings.stream.fps == 15
        assert settings.stream.width == 1280
        assert settings.public_ip == "203.0.113.9"

    def test_empty_environment_values_are_ignored(self):
        settings = load_settings(environ={"RTSP_PORT": "", "PUBLIC_IP": ""})

        assert settings.server.listen_port == 89
        assert settings.public_ip is None


class TestValidation:
    """Tests for invalid settings."""

    def test_invalid_port_raises(self):
        """Should collect validation errors in details."""
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(environ={"RTSP_PORT": "70000"})

        errors = exc_info.value.details["errors"]
        assert any(e.startswith("server.listen_port") for e in errors)

    def test_colliding_ports_raise(self):
        with pytest.raises(ConfigurationError):
            load_settings(environ={"RTSP_PORT": "8889"})

    def test_invalid_public_ip_raises(self):
        with pytest.raises(ConfigurationError):
            load_settings(overrides={"public_ip": "not a host"}, environ={})

    def test_invalid_mediamtx_version_raises(self):
        with pytest.raises(ConfigurationError):
            load_settings(environ={"MEDIAMTX_VERSION": "latest"})

    def test_public_ip_accepts_domain(self):
        settings = AppSettings(public_ip="cam.example.org")

        assert settings.public_ip == "cam.example.org"


class TestReadYamlFile:
    """Tests for read_yaml_file()."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            read_yaml_file(tmp_path / "absent.yml")

    def test_malformed_yaml(self, tmp_path):
        path = write(tmp_path / "bad.yml", "server: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Malformed"):
            read_yaml_file(path)

    def test_non_mapping(self, tmp_path):
        path = write(tmp_path / "list.yml", "- a\n- b\n")

        with pytest.raises(ConfigurationError, match="expected mapping"):
            read_yaml_file(path)

    def test_empty_file_is_empty_mapping(self, tmp_path):
        assert read_yaml_file(write(tmp_path / "empty.yml", "")) == {}


class TestWriteYamlAtomic:
    """Tests for write_yaml_atomic()."""

    def test_writes_header_and_document(self, tmp_path):
        """Should keep key order and prefix the header."""
        path = tmp_path / "out" / "server.yml"

        write_yaml_atomic(path, {"b": 1, "a": True}, header="# generated\n")

        text = path.read_text(encoding="utf-8")
        assert text.startswith("# generated\n")
        assert text.index("b:") < text.index("a:")
        assert yaml.safe_load(text) == {"b": 1, "a": True}

    def test_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "server.yml"

        write_yaml_atomic(path, {"x": 1})
        write_yaml_atomic(path, {"x": 2})

        assert [p.name for p in tmp_path.iterdir()] == ["server.yml"]
        assert yaml.safe_load(path.read_text(encoding="utf-8")) == {"x": 2}
