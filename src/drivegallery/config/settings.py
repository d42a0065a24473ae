"""
Application settings and configuration management.
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from drivegallery import __version__


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = Field(default="drivegallery")
    app_version: str = Field(default=__version__)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Google Drive
    google_service_account_email: str = Field(default="")
    google_service_account_private_key: str = Field(default="")
    google_drive_folder_id: str = Field(default="")
    drive_api_base_url: str = Field(default="https://www.googleapis.com/drive/v3")
    upstream_timeout: float = Field(default=30.0)

    # Revalidation
    revalidate_secret: str = Field(default="")
    webhook_channel_prefix: str = Field(default="gallery-webhook-")

    # Media cache
    original_cache_ttl: int = Field(default=24 * 60 * 60)
    thumbnail_cache_ttl: int = Field(default=60 * 60)
    cache_max_entries: int = Field(default=200, ge=1)
    cache_evict_fraction: float = Field(default=0.1, gt=0.0, le=1.0)
    max_cacheable_bytes: int = Field(default=10 * 1024 * 1024)
    thumbnail_size: int = Field(default=400, ge=16)
    thumbnail_allowed_hosts: list[str] = Field(
        default=[
            "drive.google.com",
            "googleusercontent.com",
            "googleapis.com",
        ]
    )

    # Download scheduler
    gallery_base_url: str = Field(default="http://127.0.0.1:8000")
    download_max_concurrent: int = Field(default=1, ge=1)
    download_request_delay: float = Field(default=0.5, ge=0.0)
    download_max_retries: int = Field(default=3, ge=0)
    download_backoff_base: float = Field(default=0.5, ge=0.0)
    download_timeout: float = Field(default=60.0)

    @field_validator("thumbnail_allowed_hosts", mode="before")
    @classmethod
    def parse_allowed_hosts(cls, v: str | list[str]) -> list[str]:
        """Parse allowed thumbnail hosts from comma-separated string or list."""
        if isinstance(v, str):
            return [host.strip().lower() for host in v.split(",") if host.strip()]
        return v

    @field_validator("google_service_account_private_key")
    @classmethod
    def unescape_private_key(cls, v: str) -> str:
        """Turn escaped newlines from single-line env values into real ones."""
        return v.replace("\\n", "\n")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @property
    def has_service_account(self) -> bool:
        """Check if service account credentials are configured."""
        return bool(
            self.google_service_account_email
            and self.google_service_account_private_key
        )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()


# Global settings instance
settings = get_settings()
