"""Application configuration settings."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = Path(".env")


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SPATIAL_",
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["dev", "prod"] = Field("dev", description="Runtime environment")
    debug_mode: bool = Field(True, description="Enable debug diagnostics")
    storage_dir: Path = Field(default=Path("temp"), description="Directory holding per-session files")

    session_ttl_minutes: float = Field(15.0, gt=0, description="Maximum session age before eviction")
    sweep_interval_minutes: float = Field(15.0, gt=0, description="Period of the background eviction sweep")
    sweep_grace_seconds: float = Field(30.0, ge=0, description="Extra age tolerated before a session is swept")

    max_upload_mb: int = Field(100, ge=1, description="Maximum upload size")
    max_audio_minutes: int = Field(30, ge=1, description="Maximum audio duration in minutes")

    ircam_client_id: str | None = Field(default=None, description="IRCAM Amplify client identifier")
    ircam_client_secret: str | None = Field(default=None, description="IRCAM Amplify client secret")
    ircam_auth_url: str = Field("https://api.ircamamplify.io/oauth/token", description="Token endpoint")
    ircam_storage_url: str = Field("https://storage.ircamamplify.io", description="Object storage base URL")
    ircam_spatial_url: str = Field(
        "https://api.ircamamplify.io/stereotospatial/", description="Spatialization job endpoint"
    )

    token_validity_minutes: float = Field(30.0, gt=0, description="Lifetime granted to a freshly issued token")
    http_timeout_s: float = Field(120.0, gt=0, description="Timeout for provider HTTP calls")
    poll_interval_s: float = Field(5.0, ge=0, description="Delay between job status checks")
    poll_max_attempts: int = Field(720, ge=1, description="Status checks before a job is abandoned")

    @field_validator("storage_dir", mode="before")
    @classmethod
    def _ensure_path(cls, value: Path | str) -> Path:
        return Path(value)


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    settings = Settings()
    settings.storage_dir.mkdir(parents=True, exist_ok=True)
    return settings


__all__ = ["ENV_FILE", "Settings", "get_settings"]
