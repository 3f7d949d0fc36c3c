"""Configuration schema for peercall.

Defines Pydantic models for loading and validating call configuration
from YAML files and environment variables.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class IceServerConfig(BaseModel):
    """STUN/TURN server used for ICE candidate gathering."""

    urls: str | list[str] = Field(..., description="Server URL(s), e.g. stun:host:port")
    username: str | None = Field(default=None, description="TURN username")
    credential: str | None = Field(default=None, description="TURN credential")

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, v: str | list[str]) -> str | list[str]:
        """Validate that every URL uses a STUN or TURN scheme."""
        urls = [v] if isinstance(v, str) else v
        if not urls:
            raise ValueError("ICE server urls must not be empty")
        for url in urls:
            if not url.startswith(("stun:", "stuns:", "turn:", "turns:")):
                raise ValueError(f"ICE server url must be a stun: or turn: URL, got '{url}'")
        return v


def default_ice_servers() -> list[IceServerConfig]:
    """Public STUN servers used when none are configured."""
    return [
        IceServerConfig(urls="stun:stun.l.google.com:19302"),
        IceServerConfig(urls="stun:global.stun.twilio.com:3478"),
    ]


class SignalBusConfig(BaseModel):
    """Signal bus (shared chat record stream) configuration."""

    backend: Literal["memory", "redis"] = Field(
        default="redis",
        description="Bus backend: in-process memory or Redis pub/sub",
    )
    redis_url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL",
    )
    db: int = Field(default=0, ge=0, le=15, description="Redis database number")
    channel_prefix: str = Field(
        default="call:",
        description="Prefix for room channels and history keys",
    )
    room: str = Field(default="lobby", min_length=1, description="Shared room name")
    history_size: int = Field(
        default=100,
        ge=1,
        description="Number of records kept in room history",
    )

    @property
    def channel(self) -> str:
        """Pub/sub channel carrying new records for the room."""
        return f"{self.channel_prefix}{self.room}"

    @property
    def history_key(self) -> str:
        """List key holding the room's recent records."""
        return f"{self.channel}:messages"


class MediaConfig(BaseModel):
    """Local audio capture and remote audio rendering configuration."""

    input_device: str = Field(
        default="default",
        description="Capture device or file passed to the media player",
    )
    input_format: str | None = Field(
        default="pulse",
        description="Capture format (pulse, alsa, avfoundation, dshow) or None for files",
    )
    output_device: str | None = Field(
        default=None,
        description="Playback device or output file; None discards remote audio",
    )
    output_format: str | None = Field(
        default=None,
        description="Playback format (pulse, alsa) or None to infer from file name",
    )


class CallConfig(BaseModel):
    """Root call configuration."""

    ice_servers: list[IceServerConfig] = Field(default_factory=default_ice_servers)
    notify_peer_on_hangup: bool = Field(
        default=False,
        description="Send end-call to the active peer when hanging up a live call",
    )
    signal_bus: SignalBusConfig = Field(default_factory=SignalBusConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize the logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "CallConfig":
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

        if redis_url := os.getenv("REDIS_URL"):
            data.setdefault("signal_bus", {})["redis_url"] = redis_url

        if room := os.getenv("PEERCALL_ROOM"):
            data.setdefault("signal_bus", {})["room"] = room

        if log_level := os.getenv("PEERCALL_LOG_LEVEL"):
            data["log_level"] = log_level

        if input_device := os.getenv("PEERCALL_INPUT_DEVICE"):
            data.setdefault("media", {})["input_device"] = input_device

        if input_format := os.getenv("PEERCALL_INPUT_FORMAT"):
            data.setdefault("media", {})["input_format"] = input_format

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "CallConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls()
