"""
Configuration management for the Evacuation Roster Console.
"""

from functools import lru_cache
from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Basic app settings
    DEBUG: bool = Field(default=True, env="DEBUG")
    HOST: str = Field(default="0.0.0.0", env="HOST")
    PORT: int = Field(default=8000, env="PORT")

    # CORS settings
    ALLOWED_ORIGINS: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        env="ALLOWED_ORIGINS"
    )

    @field_validator('ALLOWED_ORIGINS', 'DUPLICATE_MATCH_FIELDS', mode='before')
    @classmethod
    def join_comma_lists(cls, v):
        if isinstance(v, (list, tuple)):
            return ','.join(v)
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        """Get ALLOWED_ORIGINS as a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(',') if origin.strip()]

    # Evacuee REST API
    EVAC_API_BASE_URL: str = Field(
        default="http://localhost:3000/api/v1",
        env="EVAC_API_BASE_URL"
    )
    EVAC_API_TIMEOUT_SECONDS: int = Field(default=30, env="EVAC_API_TIMEOUT_SECONDS")

    # Change-notification stream
    REALTIME_URL: Optional[str] = Field(default=None, env="REALTIME_URL")
    REALTIME_API_KEY: Optional[str] = Field(default=None, env="REALTIME_API_KEY")
    REALTIME_HEARTBEAT_SECONDS: int = Field(default=30, env="REALTIME_HEARTBEAT_SECONDS")
    REALTIME_SCHEMA: str = Field(default="public", env="REALTIME_SCHEMA")

    # Refresh coalescing
    REFRESH_QUIET_PERIOD_MS: int = Field(default=300, ge=1, env="REFRESH_QUIET_PERIOD_MS")

    # Roster listing
    DEFAULT_ROWS_PER_PAGE: int = Field(default=5, ge=1, env="DEFAULT_ROWS_PER_PAGE")
    MAX_ROWS_PER_PAGE: int = Field(default=100, ge=1, env="MAX_ROWS_PER_PAGE")

    # Duplicate registration matching
    DUPLICATE_MATCH_FIELDS: str = Field(default="birthdate", env="DUPLICATE_MATCH_FIELDS")

    @property
    def duplicate_match_fields_list(self) -> List[str]:
        """Get DUPLICATE_MATCH_FIELDS as a list."""
        return [f.strip() for f in self.DUPLICATE_MATCH_FIELDS.split(',') if f.strip()]

    # Calendar-day comparisons for aware timestamps
    LOCAL_TIMEZONE: Optional[str] = Field(default=None, env="LOCAL_TIMEZONE")

    @property
    def refresh_quiet_period_seconds(self) -> float:
        return self.REFRESH_QUIET_PERIOD_MS / 1000.0

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore"
    }


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
