"""Configuration package."""

from twealth.config.settings import (
    AppSettings,
    DatabaseSettings,
    NotificationSettings,
    QuotaSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "NotificationSettings",
    "QuotaSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
