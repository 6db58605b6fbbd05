"""Application settings loaded from environment variables."""
from functools import lru_cache
from typing import List
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
        default="sqlite+aiosqlite:///./data/screening_match.db",
        description="Database connection URL"
    )
    external_database_url: str = Field(
        default="",
        description="External PostgreSQL database URL (takes priority over database_url)"
    )

    # Application
    app_env: str = Field(default="development", description="Application environment")
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="", description="Optional JSON log file name (written under ./tmp/)")
    cors_origins: List[str] = Field(
        default=["*"],
        description="Allowed CORS origins"
    )

    # Waitlist matching defaults (overridable per run)
    waitlist_batch_size: int = Field(default=50, description="Patients considered per screening type per run")
    waitlist_max_total: int = Field(default=500, description="Global cap on patients considered per run")
    waitlist_parallel: bool = Field(default=False, description="Process screening types concurrently")
    waitlist_concurrent: int = Field(default=5, description="Max screening types processed at once")
    waitlist_demographic_targeting: bool = Field(default=True, description="Apply age/gender/income targeting")
    waitlist_geographic_targeting: bool = Field(default=True, description="Apply state/LGA targeting")
    waitlist_expiry_days: int = Field(default=30, description="Days before an unclaimed match expires")
    waitlist_run_timeout_seconds: float = Field(default=0, description="Run deadline in seconds (0 disables)")

    # Allocation rules
    general_pool_campaign_id: str = Field(default="general-donor-pool", description="Fallback campaign id")
    max_active_allocations_per_patient: int = Field(
        default=3,
        description="Unclaimed, non-expired allocations a patient may hold at once"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
