"""Application settings loaded from environment variables."""
from functools import lru_cache
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/measure_engine.db",
        description="Database connection URL"
    )
    external_database_url: str = Field(
        default="",
        description="External PostgreSQL database URL (takes priority over database_url)"
    )

    # Application
    app_env: str = Field(default="development", description="Application environment")
    log_level: str = Field(default="INFO", description="Logging level")
    cors_origins: List[str] = Field(
        default=["*"],
        description="Allowed CORS origins"
    )

    # Evaluation
    measurement_year: Optional[int] = Field(
        default=None,
        description="Default measurement year when a measure does not declare its period (current year if unset)"
    )

    # Component matching
    fuzzy_min_word_overlap: int = Field(
        default=2,
        description="Significant words two names must share to count as a similar match"
    )
    fuzzy_min_word_length: int = Field(
        default=4,
        description="Minimum length for a word to count as significant in fuzzy matching"
    )

    # Library maintenance
    auto_archive_unused_components: bool = Field(
        default=False,
        description="Archive components with no usage when the usage index is rebuilt"
    )
    auto_import_user: str = Field(
        default="auto-import",
        description="Author recorded on components created by measure linking"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
