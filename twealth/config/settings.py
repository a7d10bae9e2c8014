"""
Configuration Management for the Twealth Engine

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Every threshold the notification rules and quota checks depend on lives in
one place, so tuning a rule never means touching its code.
"""

from datetime import datetime
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational storage configuration (used by the SQL backend)."""

    model_config = SettingsConfigDict(
        env_prefix="TWEALTH_DB_",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite://",
        description="SQLAlchemy database URL"
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements to the log"
    )
    pool_size: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Connection pool size (ignored for SQLite)"
    )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class QuotaSettings(BaseSettings):
    """Subscription plan and usage-quota configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TWEALTH_QUOTA_",
        extra="ignore"
    )

    unlimited_sentinel: int = Field(
        default=999999,
        gt=0,
        description="Limit value that stands for 'unlimited'"
    )
    lifetime_period_end: datetime = Field(
        default=datetime(2099, 12, 31),
        description="Far-future period end used by lifetime-limit plans"
    )
    default_plan_name: str = Field(
        default="free",
        description="Plan assigned when a user has no subscription yet"
    )
    plan_cache_ttl_seconds: int = Field(
        default=300,
        ge=0,
        description="How long resolved plans stay cached"
    )
    plan_cache_size: int = Field(
        default=64,
        ge=1,
        description="Maximum number of cached plans"
    )

    @field_validator("default_plan_name")
    @classmethod
    def normalize_plan_name(cls, v: str) -> str:
        return v.strip().lower()


class NotificationSettings(BaseSettings):
    """Smart notification thresholds and windows."""

    model_config = SettingsConfigDict(
        env_prefix="TWEALTH_NOTIFY_",
        extra="ignore"
    )

    dedup_window_hours: int = Field(
        default=24,
        ge=1,
        description="A notification type is sent at most once per this window"
    )
    lookback_days: int = Field(
        default=30,
        ge=1,
        description="Trailing window for income/expense totals"
    )
    inactivity_days: int = Field(
        default=7,
        ge=1,
        description="Days without a transaction before a reminder is sent"
    )
    deadline_window_days: int = Field(
        default=30,
        ge=1,
        description="Goals due within this many days are checked for deadline risk"
    )
    deadline_progress_percent: float = Field(
        default=50.0,
        gt=0,
        le=100,
        description="Goals below this progress near their deadline are at risk"
    )
    volatility_weeks: int = Field(
        default=4,
        ge=2,
        description="Number of trailing weeks compared for spending volatility"
    )
    volatility_threshold_percent: float = Field(
        default=50.0,
        gt=0,
        description="Max deviation from the weekly mean that counts as volatile"
    )
    volatility_min_weekly: float = Field(
        default=100.0,
        ge=0,
        description="Mean weekly spend below which volatility is ignored"
    )
    emergency_fund_min_expenses: float = Field(
        default=1000.0,
        ge=0,
        description="Trailing expenses above which a missing emergency fund is flagged"
    )
    almost_complete_percent: float = Field(
        default=90.0,
        gt=0,
        lt=100,
        description="Progress at which an 'almost there' notification is sent"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="TWEALTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Minimum level for structured logs"
    )

    # Storage selection
    storage_backend: str = Field(
        default="memory",
        pattern="^(memory|sql)$",
        description="Which storage implementation to construct"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def quota(self) -> QuotaSettings:
        return QuotaSettings()

    @property
    def notifications(self) -> NotificationSettings:
        return NotificationSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings(settings: Optional[Settings] = None) -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus "<name>_error"
    entries describing any failure. Useful for startup checks.
    """
    results = {}
    settings = settings or get_settings()

    for name in ("database", "quota", "notifications", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
