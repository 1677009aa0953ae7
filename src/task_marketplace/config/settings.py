"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "task-marketplace"
    app_env: str = "dev"
    app_debug: bool = False
    database_url: str = ""
    storage_backend: Literal["postgres", "memory"] = "postgres"

    # Matching
    default_max_distance_km: float = Field(default=25.0, gt=0.0)
    default_match_limit: int = Field(default=20, ge=1)
    max_match_limit: int = Field(default=100, ge=1)
    candidate_pool_size: int = Field(default=200, ge=1)
    default_matching_strategy: Literal["LOCATION_ONLY", "INTELLIGENT"] = "INTELLIGENT"
    intelligent_distance_weight: float = Field(default=0.5, ge=0.0)
    intelligent_rating_weight: float = Field(default=0.3, ge=0.0)
    intelligent_completion_weight: float = Field(default=0.2, ge=0.0)

    # Task lifecycle
    task_ttl_days: int = Field(default=30, ge=1)

    # Geocoding (OpenStreetMap Nominatim)
    geocoder_base_url: str = "https://nominatim.openstreetmap.org"
    geocoder_user_agent: str = "TaskMarketplace/0.1"
    geocoder_referer: str = "https://localhost"
    geocoder_country_code: str = "gh"
    geocoder_timeout_s: float = Field(default=5.0, ge=0.1)
    geocoder_max_retries: int = Field(default=1, ge=0)
    geocoder_backoff_s: float = Field(default=0.2, ge=0.0)
    geocoder_min_interval_s: float = Field(default=1.5, ge=0.0)
    verification_radius_km: float = Field(default=0.5, gt=0.0)
    confidence_cutoff_km: float = Field(default=5.0, gt=0.0)

    # Provider candidate source
    provider_source_url: str = ""
    provider_seed_path: str = ""
    provider_source_timeout_s: float = Field(default=3.0, ge=0.1)
    provider_source_max_retries: int = Field(default=1, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="MARKETPLACE_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
