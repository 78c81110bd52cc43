"""Unit tests for talkback configuration.

Tests defaults, validation boundaries, YAML loading and environment
variable overrides.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from src.talkback.config import (
    DiscoveryConfig,
    RelayConfig,
    TalkbackConfig,
    TranscoderConfig,
    TwoWayAudioMode,
)


class TestDefaults:
    """Test default configuration values."""

    def test_default_initialization(self) -> None:
        """Defaults target a UniFi camera behind a local discovery service."""
        config = TalkbackConfig()
        assert config.two_way_audio is TwoWayAudioMode.UNIFI
        assert config.discovery.base_url == "http://localhost:3404"
        assert config.discovery.path == "/talkbackUrl"
        assert config.transcoder.payload_type == 111
        assert config.track_relay.feedback_interval_s == 3.0
        assert config.outbound_relay.chunk_size == 5000
        assert config.signaling.verify_tls is False
        assert config.relay.port_range_start is None

    def test_from_yaml_with_defaults_missing_file(self, tmp_path: Path) -> None:
        """Missing file falls back to defaults."""
        config = TalkbackConfig.from_yaml_with_defaults(tmp_path / "absent.yaml")
        assert config == TalkbackConfig()

    def test_from_yaml_with_defaults_none(self) -> None:
        assert TalkbackConfig.from_yaml_with_defaults(None) == TalkbackConfig()


class TestValidation:
    """Test validation boundaries."""

    def test_discovery_url_must_be_http(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            DiscoveryConfig(base_url="ftp://example.com")
        assert "base_url" in str(exc_info.value)

    def test_discovery_url_trailing_slash_stripped(self) -> None:
        assert DiscoveryConfig(base_url="http://host:1/").base_url == "http://host:1"

    def test_discovery_path_made_absolute(self) -> None:
        assert DiscoveryConfig(path="talkbackUrl").path == "/talkbackUrl"

    def test_port_range_requires_both_bounds(self) -> None:
        with pytest.raises(ValidationError):
            RelayConfig(port_range_start=40000)

    def test_port_range_must_be_ordered(self) -> None:
        with pytest.raises(ValidationError):
            RelayConfig(port_range_start=40010, port_range_end=40000)

    def test_port_range_valid(self) -> None:
        config = RelayConfig(port_range_start=40000, port_range_end=40010)
        assert (config.port_range_start, config.port_range_end) == (40000, 40010)

    def test_port_range_below_minimum(self) -> None:
        with pytest.raises(ValidationError):
            RelayConfig(port_range_start=80, port_range_end=90)

    def test_payload_type_dynamic_range(self) -> None:
        with pytest.raises(ValidationError):
            TranscoderConfig(payload_type=8)

    def test_marker_single_line(self) -> None:
        with pytest.raises(ValidationError):
            TranscoderConfig(marker="Talk\nback")

    def test_write_timeout_positive(self) -> None:
        with pytest.raises(ValidationError):
            RelayConfig(write_timeout_s=0)

    def test_log_level_normalized(self) -> None:
        assert TalkbackConfig(log_level="debug").log_level == "DEBUG"

    def test_log_level_invalid(self) -> None:
        with pytest.raises(ValidationError):
            TalkbackConfig(log_level="LOUD")

    def test_two_way_audio_from_string(self) -> None:
        config = TalkbackConfig.model_validate({"two_way_audio": "hikvision"})
        assert config.two_way_audio is TwoWayAudioMode.HIKVISION


class TestYamlLoading:
    """Test YAML loading with environment overrides."""

    def test_from_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "talkback.yaml"
        path.write_text(
            "two_way_audio: dahua\n"
            "discovery:\n"
            "  base_url: http://discovery:9000\n"
            "transcoder:\n"
            "  marker: CamTalk\n"
        )
        config = TalkbackConfig.from_yaml(path)
        assert config.two_way_audio is TwoWayAudioMode.DAHUA
        assert config.discovery.base_url == "http://discovery:9000"
        assert config.transcoder.marker == "CamTalk"

    def test_from_yaml_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            TalkbackConfig.from_yaml(tmp_path / "missing.yaml")

    def test_from_yaml_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert TalkbackConfig.from_yaml(path) == TalkbackConfig()

    def test_from_yaml_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            TalkbackConfig.from_yaml(path)

    def test_env_overrides(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "talkback.yaml"
        path.write_text("log_level: INFO\n")
        monkeypatch.setenv("TALKBACK_DISCOVERY_URL", "http://override:1234")
        monkeypatch.setenv("TALKBACK_FFMPEG_PATH", "/opt/ffmpeg/bin/ffmpeg")
        monkeypatch.setenv("TALKBACK_VERIFY_TLS", "true")
        monkeypatch.setenv("TALKBACK_LOG_LEVEL", "warning")

        config = TalkbackConfig.from_yaml(path)

        assert config.discovery.base_url == "http://override:1234"
        assert config.transcoder.ffmpeg_path == "/opt/ffmpeg/bin/ffmpeg"
        assert config.signaling.verify_tls is True
        assert config.log_level == "WARNING"

    def test_shipped_config_loads(self) -> None:
        """The sample config in configs/ is valid."""
        path = Path(__file__).parent.parent.parent / "configs" / "talkback.yaml"
        config = TalkbackConfig.from_yaml(path)
        assert config.transcoder.marker == "TalkbackRelay"
