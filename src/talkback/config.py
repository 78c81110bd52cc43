"""Configuration schema for the talkback orchestrator.

Defines Pydantic models for loading and validating talkback configuration
from YAML files and environment variables.
"""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator


class TwoWayAudioMode(str, Enum):
    """Camera family the talkback audio is sent to."""

    DISABLED = "disabled"
    UNIFI = "unifi"
    DAHUA = "dahua"
    HIKVISION = "hikvision"


class DiscoveryConfig(BaseModel):
    """Signaling endpoint discovery configuration."""

    base_url: str = Field(
        default="http://localhost:3404",
        description="Base URL of the discovery service",
    )
    path: str = Field(default="/talkbackUrl", description="Discovery request path")
    timeout_s: float = Field(default=5.0, gt=0, description="Request timeout in seconds")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Validate that the base URL is an HTTP(S) URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Discovery base_url must be an http(s) URL, got '{v}'")
        return v.rstrip("/")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure the path is absolute."""
        return v if v.startswith("/") else f"/{v}"


class SignalingConfig(BaseModel):
    """Signaling websocket configuration."""

    verify_tls: bool = Field(
        default=False,
        description="Validate the server certificate for wss:// URLs (disable for development)",
    )
    connect_timeout_s: float = Field(
        default=10.0, gt=0, description="Dial and handshake timeout in seconds"
    )
    close_timeout_s: float = Field(
        default=2.0, gt=0, description="Closing handshake timeout in seconds"
    )
    max_message_size: int = Field(
        default=2**20, ge=1024, description="Maximum inbound message size in bytes"
    )


class RelayConfig(BaseModel):
    """Local datagram relay configuration."""

    host: str = Field(default="127.0.0.1", description="Loopback address for the relay")
    port_range_start: int | None = Field(
        default=None,
        ge=1024,
        le=65535,
        description="First relay port (None selects OS-assigned ephemeral ports)",
    )
    port_range_end: int | None = Field(
        default=None, ge=1024, le=65535, description="Last relay port (inclusive)"
    )
    write_timeout_s: float = Field(
        default=1.0, gt=0, description="Write deadline for each relayed frame"
    )

    @model_validator(mode="after")
    def validate_port_range(self) -> "RelayConfig":
        """Require both range bounds together, in order."""
        start, end = self.port_range_start, self.port_range_end
        if (start is None) != (end is None):
            raise ValueError("port_range_start and port_range_end must be set together")
        if start is not None and end is not None and start > end:
            raise ValueError(f"port_range_start ({start}) must be <= port_range_end ({end})")
        return self


class TranscoderConfig(BaseModel):
    """External transcoder (ffmpeg) configuration."""

    ffmpeg_path: str = Field(default="ffmpeg", description="ffmpeg executable")
    marker: str = Field(
        default="TalkbackRelay",
        min_length=1,
        description="SDP session name; its appearance on stderr signals readiness",
    )
    payload_type: int = Field(default=111, ge=96, le=127, description="RTP payload type")
    rtpmap: str = Field(default="opus/48000/2", description="Codec/clock-rate attribute")
    stop_timeout_s: float = Field(
        default=3.0, gt=0, description="Grace period before the process is killed"
    )

    @field_validator("marker")
    @classmethod
    def validate_marker(cls, v: str) -> str:
        """The marker is an SDP session name and must fit on one line."""
        if any(c in v for c in "\r\n"):
            raise ValueError("Transcoder marker must not contain line breaks")
        return v


class TrackRelayConfig(BaseModel):
    """Inbound track relay configuration."""

    read_timeout_s: float = Field(
        default=1.0, gt=0, description="Bound on each blocking track read"
    )
    feedback_interval_s: float = Field(
        default=3.0, gt=0, description="Interval between loss-indication packets"
    )


class OutboundRelayConfig(BaseModel):
    """Transcoder output to signaling relay configuration."""

    chunk_size: int = Field(default=5000, ge=1, description="Maximum bytes per binary frame")
    read_timeout_s: float = Field(
        default=1.0, gt=0, description="Bound on each blocking transcoder read"
    )
    error_backoff_s: float = Field(
        default=0.05, ge=0, description="Pause after a failed read or send"
    )


class TalkbackConfig(BaseModel):
    """Root talkback configuration."""

    two_way_audio: TwoWayAudioMode = Field(
        default=TwoWayAudioMode.UNIFI, description="Target camera family"
    )
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    signaling: SignalingConfig = Field(default_factory=SignalingConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    transcoder: TranscoderConfig = Field(default_factory=TranscoderConfig)
    track_relay: TrackRelayConfig = Field(default_factory=TrackRelayConfig)
    outbound_relay: OutboundRelayConfig = Field(default_factory=OutboundRelayConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    close_timeout_s: float = Field(
        default=2.0,
        gt=0,
        description="How long close() waits for session tasks after cancellation",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate the logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "TalkbackConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import os

        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        if discovery_url := os.getenv("TALKBACK_DISCOVERY_URL"):
            data.setdefault("discovery", {})["base_url"] = discovery_url

        if ffmpeg_path := os.getenv("TALKBACK_FFMPEG_PATH"):
            data.setdefault("transcoder", {})["ffmpeg_path"] = ffmpeg_path

        if verify_tls := os.getenv("TALKBACK_VERIFY_TLS"):
            data.setdefault("signaling", {})["verify_tls"] = verify_tls.lower() in (
                "true",
                "1",
                "yes",
            )

        if log_level := os.getenv("TALKBACK_LOG_LEVEL"):
            data["log_level"] = log_level

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "TalkbackConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls()
