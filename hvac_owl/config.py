"""Configuration management for hvac-owl.

Loads environment variables from .env file and provides typed access
to configuration values using pydantic-settings.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # OpenAI API
    openai_api_key: Optional[str] = None
    completion_timeout_s: float = 60.0

    # Slack Web API
    slack_bot_token: Optional[str] = None
    slack_api_url: str = "https://slack.com/api"
    # Comma separated "name=CHANNEL_ID" pairs
    project_channels: str = ""

    # Uploads
    upload_dir: str = "uploads"
    max_upload_files: int = Field(5, ge=1)
    max_upload_bytes: int = Field(5 * 1024 * 1024, ge=1)
    allowed_mime_types: tuple[str, ...] = ("image/jpeg", "image/png", "image/heic")

    # Application settings
    port: int = 5000
    environment: str = "development"
    database_path: str = "project_owl.db"
    version_file: str = "version.json"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        """True when error details must be hidden from API clients."""
        return self.environment.lower() == "production"

    @property
    def project_channel_ids(self) -> list[str]:
        """Channel IDs parsed from PROJECT_CHANNELS."""
        ids = []
        for entry in self.project_channels.split(","):
            _, _, channel_id = entry.partition("=")
            if channel_id.strip():
                ids.append(channel_id.strip())
        return ids


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
