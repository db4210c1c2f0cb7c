"""
Configuration for changetail.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
Settings are read once at startup and passed explicitly to every component.
"""
from pathlib import Path
from typing import Optional
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..exceptions import ConfigError


class MongoSettings(BaseSettings):
    """MongoDB source configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MONGODB_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True
    )

    uri: str = Field(description="MongoDB connection URI")
    database: str = Field(description="Database holding the watched collection")
    collection: str = Field(description="Collection whose change stream is tailed")

    # Connection settings
    direct_connection: bool = Field(default=True, description="Connect directly to the given host")
    server_selection_timeout: int = Field(default=10, description="Server selection timeout in seconds")

    @field_validator("uri", "database", "collection")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject blank values; they count as missing."""
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("server_selection_timeout")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("server_selection_timeout must be positive")
        return v


class StreamSettings(BaseSettings):
    """Change stream polling configuration."""

    model_config = SettingsConfigDict(
        env_prefix="STREAM_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True
    )

    # Upper bound on how long a poll blocks, and therefore on shutdown latency
    max_await_time_ms: int = Field(default=1000, description="Max time a poll waits for new events")
    batch_size: int = Field(default=100, description="Change stream cursor batch size")

    @field_validator("max_await_time_ms", "batch_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class CheckpointSettings(BaseSettings):
    """Resume token persistence configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CHECKPOINT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True
    )

    directory: str = Field(default=".", description="Directory holding resume token files")
    token_file: Optional[str] = Field(
        default=None,
        description="Explicit resume token path. Overrides the per-feed default name if set."
    )


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True
    )

    # WITH_RESUME=false starts at the tail and skips all checkpoint I/O
    with_resume: bool = Field(default=True, description="Resume from the saved token")
    output_file: str = Field(default="change_events", description="Append-only output file")

    log_level: str = Field(default="INFO", description="Root log level")
    log_format: str = Field(default="plain", description="Log format: plain or json")
    metrics_port: int = Field(default=0, description="Prometheus exporter port, 0 disables it")

    # Sub-configurations
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {sorted(allowed)}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v.lower() not in {"plain", "json"}:
            raise ValueError("log_format must be 'plain' or 'json'")
        return v.lower()

    @field_validator("metrics_port")
    @classmethod
    def validate_metrics_port(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError("metrics_port must be between 0 and 65535")
        return v

    @property
    def feed_identity(self) -> str:
        """Database and collection the resume token belongs to."""
        return f"{self.mongo.database}.{self.mongo.collection}"

    @property
    def token_path(self) -> Path:
        """Location of the resume token for this feed."""
        if self.checkpoint.token_file:
            return Path(self.checkpoint.token_file)
        return Path(self.checkpoint.directory) / f"resume_token_{self.feed_identity}"


def load_settings(**overrides) -> Settings:
    """
    Build the settings for this process.

    Args:
        **overrides: Explicit values taking precedence over the environment

    Returns:
        Frozen Settings instance

    Raises:
        ConfigError: If a required value is missing or a value is invalid
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e
