"""
DevPulse Client - Configuration
================================

All client settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="DEVPULSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "DevPulse"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # Remote Job API
    # ==========================================================================
    API_BASE_URL: str = "http://localhost:5000/api/v1"
    API_TIMEOUT_SECONDS: float = 10.0
    ANALYSIS_LIST_LIMIT: int = 50

    # ==========================================================================
    # Polling
    # ==========================================================================
    POLL_INTERVAL_SECONDS: float = 3.0
    FIX_REFRESH_DELAY_SECONDS: float = 2.0

    # ==========================================================================
    # Risk thresholds (quality score)
    # ==========================================================================
    HIGH_RISK_THRESHOLD: int = 70
    LOW_RISK_THRESHOLD: int = 90

    # ==========================================================================
    # Local state (session token, encrypted PAT)
    # ==========================================================================
    STATE_DIR: Path = Path.home() / ".devpulse"
    CREDENTIAL_ENCRYPTION_KEY: str = "devpulse-default-key-change-this-in-production"

    # ==========================================================================
    # GitHub
    # ==========================================================================
    GITHUB_API_URL: str = "https://api.github.com"

    # ==========================================================================
    # Logging
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # ==========================================================================
    # Local read-model API
    # ==========================================================================
    SERVER_HOST: str = "127.0.0.1"
    SERVER_PORT: int = 8765
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    @field_validator("API_BASE_URL", "GITHUB_API_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("POLL_INTERVAL_SECONDS", "FIX_REFRESH_DELAY_SECONDS")
    @classmethod
    def non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Interval must not be negative")
        return v

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
