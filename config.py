"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_path: str = Field(default="contacts.db")
    database_timeout_seconds: float = Field(default=5.0)

    # Union-find
    union_max_retries: int = Field(default=5, ge=1)
    union_retry_backoff_seconds: float = Field(default=0.01, ge=0)

    # Ingestion
    accept_client_ids: bool = Field(default=True)
    rewrite_precedence: bool = Field(default=True)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
