"""Configuration schema for the signaling server.

Defines Pydantic models for loading and validating signaling configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from src.signaling.room import MAX_DISPLAY_NAME_LENGTH, ROOM_CAPACITY


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8081, ge=1024, le=65535, description="Bind port")
    max_connections: int = Field(default=500, ge=1, description="Maximum concurrent connections")
    max_message_size: int = Field(
        default=64 * 1024, ge=1024, description="Maximum inbound frame size in bytes"
    )
    heartbeat_interval_s: float = Field(
        default=30.0, gt=0, description="Seconds between liveness pings"
    )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)


class IceConfig(BaseModel):
    """STUN/TURN servers handed to clients on join.

    Example usage:
        ```yaml
        ice:
          stun_urls:
            - "stun:stun.l.google.com:19302"
          turn_url: "turn:turn.example.com:3478"
          turn_username: "user"
          turn_credential: "secret"
        ```
    """

    stun_urls: list[str] = Field(
        default_factory=lambda: ["stun:stun.l.google.com:19302"],
        description="STUN server URLs",
    )
    turn_url: str | None = Field(default=None, description="TURN server URL")
    turn_username: str | None = Field(default=None, description="TURN username")
    turn_credential: str | None = Field(default=None, description="TURN credential")

    @field_validator("stun_urls")
    @classmethod
    def validate_stun_urls(cls, v: list[str]) -> list[str]:
        """Validate STUN URL scheme."""
        for url in v:
            if not url.startswith(("stun:", "stuns:")):
                raise ValueError(f"STUN URL must start with 'stun:' or 'stuns:', got {url}")
        return v

    @field_validator("turn_url")
    @classmethod
    def validate_turn_url(cls, v: str | None) -> str | None:
        """Validate TURN URL scheme."""
        if v is not None and not v.startswith(("turn:", "turns:")):
            raise ValueError(f"TURN URL must start with 'turn:' or 'turns:', got {v}")
        return v


class RoomsConfig(BaseModel):
    """Room limits."""

    max_participants: int = Field(
        default=ROOM_CAPACITY,
        ge=2,
        le=ROOM_CAPACITY,
        description="Maximum participants per room (mesh size)",
    )
    max_display_name_length: int = Field(
        default=MAX_DISPLAY_NAME_LENGTH,
        description="Maximum display name length (fixed)",
    )

    @field_validator("max_display_name_length")
    @classmethod
    def validate_display_name_length(cls, v: int) -> int:
        if v != MAX_DISPLAY_NAME_LENGTH:
            raise ValueError(
                f"max_display_name_length is fixed at {MAX_DISPLAY_NAME_LENGTH}, got {v}"
            )
        return v


class HealthConfig(BaseModel):
    """HTTP health endpoint configuration."""

    enabled: bool = Field(default=True, description="Serve health endpoints")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int | None = Field(
        default=None,
        ge=1024,
        le=65535,
        description="Bind port (defaults to websocket port + 1)",
    )


class SignalingConfig(BaseModel):
    """Root signaling server configuration."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    ice: IceConfig = Field(default_factory=IceConfig)
    rooms: RoomsConfig = Field(default_factory=RoomsConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
        level = v.upper()
        if level not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got {v}")
        return level

    @model_validator(mode="after")
    def default_health_port(self) -> "SignalingConfig":
        """Place health endpoints next to the websocket port when unset."""
        if self.health.port is None:
            ws_port = self.transport.websocket.port
            self.health.port = ws_port + 1 if ws_port < 65535 else ws_port - 1
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> "SignalingConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "SignalingConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _section(data: dict[str, Any], *keys: str) -> dict[str, Any]:
    """Return (creating as needed) the nested mapping at ``keys``."""
    node = data
    for key in keys:
        if node.get(key) is None:
            node[key] = {}
        node = node[key]
    return node


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    if ws_host := os.getenv("WS_HOST"):
        _section(data, "transport", "websocket")["host"] = ws_host

    if ws_port := os.getenv("WS_PORT"):
        _section(data, "transport", "websocket")["port"] = int(ws_port)

    if heartbeat := os.getenv("HEARTBEAT_INTERVAL_S"):
        _section(data, "transport", "websocket")["heartbeat_interval_s"] = float(heartbeat)

    # Comma separated list allowed
    if stun_server := os.getenv("STUN_SERVER"):
        urls = [url.strip() for url in stun_server.split(",") if url.strip()]
        _section(data, "ice")["stun_urls"] = urls

    if turn_server := os.getenv("TURN_SERVER"):
        _section(data, "ice")["turn_url"] = turn_server

    if turn_username := os.getenv("TURN_USERNAME"):
        _section(data, "ice")["turn_username"] = turn_username

    if turn_credential := os.getenv("TURN_CREDENTIAL"):
        _section(data, "ice")["turn_credential"] = turn_credential

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level

    return data
