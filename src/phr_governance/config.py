"""
PHR Governance Configuration

Centralized configuration management using Pydantic Settings.
Supports environment variables and .env files.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SENSITIVE_DATA_TYPES = [
    "mental_health_record",
    "substance_abuse",
    "hiv",
    "genetic",
    "reproductive",
]


class GovernanceSettings(BaseSettings):
    """Main settings for the consent and emergency-access core."""

    model_config = SettingsConfigDict(
        env_prefix="PHR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    patient_id: str = "local-patient"
    env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    log_json: bool = True

    # Background expiry sweeps
    sweep_interval_seconds: int = Field(default=300, gt=0)

    # Emergency access
    default_expiry_hours: int = Field(default=24, gt=0)

    # Risk policy
    risk_window_days: int = Field(default=180, gt=0)
    risk_expiry_horizon_days: int = Field(default=365, gt=0)
    sensitive_data_types: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SENSITIVE_DATA_TYPES)
    )
    all_records_tag: str = "All Records"

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


@lru_cache
def get_settings() -> GovernanceSettings:
    """Get cached settings instance."""
    return GovernanceSettings()
