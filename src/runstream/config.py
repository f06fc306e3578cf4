"""Configuration management for runstream."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from runstream.errors import ConfigurationError

DEFAULT_COMMAND = ("go", "run", "{source}")


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="RUNSTREAM_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Client
    url: str = Field(default="ws://localhost:8080/ws", description="Backend WebSocket endpoint")
    open_timeout_seconds: float = Field(default=10.0, gt=0, description="Timeout for the opening handshake")
    completion_quiet_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Treat a run as finished after this many quiet seconds (for backends without 'done')",
    )
    reconnect_attempts: int = Field(default=5, ge=1, description="Connection attempts made by the reconnector")
    reconnect_base_delay: float = Field(default=0.5, gt=0, description="First reconnect delay in seconds")
    reconnect_max_delay: float = Field(default=10.0, gt=0, description="Upper bound for reconnect delays")

    # Backend
    host: str = Field(default="localhost", description="Interface the backend binds to")
    port: int = Field(default=8080, ge=0, le=65535, description="Port the backend listens on")
    path: str = Field(default="/ws", description="WebSocket path served by the backend")
    command: tuple[str, ...] = Field(default=DEFAULT_COMMAND, description="Command template used to run a source")
    source_filename: str = Field(default="main.go", description="File name the submitted source is written to")
    run_timeout_seconds: float = Field(default=120.0, gt=0, description="Kill a run after this many seconds")
    chunk_size: int = Field(default=1024, ge=1, description="Flush buffered output at this many characters")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")

    @field_validator("path")
    @classmethod
    def _path_is_absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("path must start with '/'")
        return value

    @field_validator("command")
    @classmethod
    def _command_has_source(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            raise ValueError("command must not be empty")
        if not any("{source}" in part for part in value):
            raise ValueError("command must reference '{source}'")
        return value

    @field_validator("source_filename")
    @classmethod
    def _filename_is_plain(cls, value: str) -> str:
        if not value or Path(value).name != value:
            raise ValueError("source_filename must be a bare file name")
        return value


def load_settings(**overrides: object) -> Settings:
    """Load settings from the environment and ``.env``, applying explicit overrides.

    Raises:
        ConfigurationError: when any value fails validation.
    """
    values = {key: value for key, value in overrides.items() if value is not None}
    try:
        return Settings(**values)  # type: ignore[arg-type]
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
