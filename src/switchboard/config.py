"""Configuration schema for the switchboard server.

Defines Pydantic models for loading and validating configuration from YAML
files and environment variables.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration (UI surfaces)."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8080, ge=1024, le=65535, description="Bind port")
    max_connections: int = Field(default=100, ge=1, description="Maximum concurrent connections")
    outbound_queue_size: int = Field(
        default=100, ge=1, description="Undelivered events buffered per port"
    )
    max_message_bytes: int = Field(
        default=2**20, ge=1024, description="Maximum inbound message size in bytes"
    )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)


class HealthConfig(BaseModel):
    """Health check HTTP server configuration."""

    enabled: bool = Field(default=True, description="Serve health check endpoints")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int = Field(default=8081, ge=1024, le=65535, description="Bind port")


class SPAConfig(BaseModel):
    """Signaling backend configuration."""

    allowed_schemes: list[str] = Field(
        default_factory=lambda: ["ws", "wss"],
        description="URL schemes accepted for SPA sources",
    )
    connect_timeout_s: float = Field(
        default=10.0, gt=0, description="Timeout for connecting and signing in to the SPA"
    )

    @field_validator("allowed_schemes")
    @classmethod
    def validate_allowed_schemes(cls, v: list[str]) -> list[str]:
        """Validate that at least one scheme is allowed."""
        if not v:
            raise ValueError("SPA allowed_schemes must not be empty")
        return [scheme.lower() for scheme in v]


class SwitchboardConfig(BaseModel):
    """Root switchboard configuration."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    spa: SPAConfig = Field(default_factory=SPAConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "SwitchboardConfig":
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
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        # Apply WebSocket environment variable overrides
        if host := os.getenv("SWITCHBOARD_HOST"):
            data.setdefault("transport", {}).setdefault("websocket", {})["host"] = host

        if port := os.getenv("SWITCHBOARD_PORT"):
            data.setdefault("transport", {}).setdefault("websocket", {})["port"] = int(port)

        if log_level := os.getenv("SWITCHBOARD_LOG_LEVEL"):
            data["log_level"] = log_level

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "SwitchboardConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls()
