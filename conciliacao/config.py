"""
Configuration management using Pydantic Settings.
All parameters are loaded from environment variables with sensible defaults.
"""

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


APP_BASE_PATH = Path(os.environ.get(
    "CONCILIACAO_BASE_PATH",
    Path.home() / ".conciliacao",
))
ENV_FILE_PATH = APP_BASE_PATH / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: str = Field(default="development")
    app_debug: bool = Field(default=False)
    app_log_level: str = Field(default="INFO")

    # Server
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)

    # Matching defaults (value tolerance in currency units)
    default_value_tolerance: Decimal = Field(default=Decimal("1.00"), ge=0)
    default_day_tolerance: int = Field(default=2, ge=0)
    default_grouping_enabled: bool = Field(default=True)
    default_description_matching_enabled: bool = Field(default=False)
    default_max_group_size: int = Field(default=10, ge=1)

    # Strict review pass (value_mismatch / date_mismatch)
    review_value_tolerance: Decimal = Field(default=Decimal("0.10"), ge=0)
    review_day_tolerance: int = Field(default=1, ge=0)

    # Single-flight run locking
    lock_mode: Literal["fail_fast", "block"] = Field(default="fail_fast")
    lock_timeout_seconds: float = Field(default=30.0, gt=0)

    # Tolerance advisor
    success_rate_threshold: float = Field(default=0.85)
    anomaly_volume_ratio: float = Field(default=0.30)
    anomaly_value_ratio: float = Field(default=0.05)

    # Storage
    reports_dir: Path = Field(default=APP_BASE_PATH / "reports")
    log_dir: Path = Field(default=APP_BASE_PATH / "logs")
    export_audit_on_shutdown: bool = Field(default=True)

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
