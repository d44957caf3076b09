"""
Application configuration management using Pydantic Settings.

This module provides a type-safe, centralized configuration system
that loads from environment variables with sensible defaults.
"""

import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """
    Application configuration loaded from environment variables.

    All settings can be overridden via .env file or environment variables.
    Settings are validated at startup using Pydantic.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ===== Narrative Engine API =====
    NARRATIVE_API_BASE_URL: str = Field(
        default="http://localhost:3000",
        description="Base URL of the narrative engine (metadata + chapter endpoints)"
    )

    NARRATIVE_API_KEY: str | None = Field(
        default=None,
        description="Optional API key sent as x-api-key to the narrative engine"
    )

    REQUEST_TIMEOUT_SECONDS: float = Field(
        default=60.0,
        gt=0,
        le=600,
        description="Timeout for metadata extraction; chapter generation gets twice this"
    )

    METADATA_CACHE_TTL_SECONDS: int = Field(
        default=86400,
        ge=0,
        description="How long extracted metadata is cached per entry text (0 disables)"
    )

    # ===== Storage =====
    STORY_DB_PATH: str = Field(
        default="./story_graph.db",
        description="SQLite database holding story chapters and nodes"
    )

    OFFLINE_QUEUE_DB_PATH: str = Field(
        default="./offline_requests.db",
        description="SQLite database holding the offline request log"
    )

    Storage_Path: str | None = Field(
        default=None,
        alias="STORAGE_PATH",
        description="Persistent volume mount. If set, both databases live there"
    )

    @property
    def story_db_path(self) -> str:
        """Get the story graph DB path, using STORAGE_PATH if available."""
        if self.Storage_Path:
            return os.path.join(self.Storage_Path, "story_graph.db")
        return self.STORY_DB_PATH

    @property
    def offline_queue_db_path(self) -> str:
        """Get the offline queue DB path, using STORAGE_PATH if available."""
        if self.Storage_Path:
            return os.path.join(self.Storage_Path, "offline_requests.db")
        return self.OFFLINE_QUEUE_DB_PATH

    # ===== Story Settings =====
    DEFAULT_GENRE: str = Field(
        default="fantasy",
        description="Genre used when a submission does not name one"
    )

    DEFAULT_USER_ID: str = Field(
        default="local-user",
        description="Caller identifier sent to the generation endpoint"
    )

    DEFAULT_STUDENT_NAME: str = Field(
        default="You",
        description="Name the generated chapter addresses"
    )

    # ===== Offline Replay =====
    OFFLINE_REPLAY_ALERT_THRESHOLD: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Replay attempts after which a failing queued request is reported"
    )

    CONNECTIVITY_PROBE_URL: str | None = Field(
        default=None,
        description="URL probed to detect connectivity (defaults to the narrative API base URL)"
    )

    CONNECTIVITY_PROBE_INTERVAL_SECONDS: int = Field(
        default=15,
        ge=1,
        le=3600,
        description="Seconds between connectivity probes"
    )

    @property
    def connectivity_probe_url(self) -> str:
        return self.CONNECTIVITY_PROBE_URL or self.NARRATIVE_API_BASE_URL

    # ===== Application Settings =====
    ENVIRONMENT: str = Field(
        default="development",
        description="Environment mode: development or production"
    )

    DEBUG: bool = Field(
        default=True,
        description="Expose exception details in error responses"
    )

    @field_validator('DEBUG', mode='before')
    @classmethod
    def parse_bool_string(cls, v):
        """Parse boolean from string values (platform env vars are strings)."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes", "on")
        return False

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    API_HOST: str = Field(
        default="0.0.0.0",
        description="API server host"
    )

    API_PORT: int = Field(
        default=8000,
        ge=1024,
        le=65535,
        description="API server port"
    )

    ALLOWED_ORIGINS: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins"
    )

    @property
    def allowed_origins_list(self) -> list[str]:
        """Get list of allowed CORS origins."""
        if self.ALLOWED_ORIGINS == "*":
            return ["*"]
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]


# Global configuration instance
# Import this in other modules: from storyloom.config import config
config = AppConfig()


if __name__ == "__main__":
    print("Configuration loaded successfully!")
    print(f"Narrative API: {config.NARRATIVE_API_BASE_URL}")
    print(f"Story DB: {config.story_db_path}")
    print(f"Offline queue DB: {config.offline_queue_db_path}")
    print(f"Default genre: {config.DEFAULT_GENRE}")
    print(f"Replay alert threshold: {config.OFFLINE_REPLAY_ALERT_THRESHOLD}")
