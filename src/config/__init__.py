"""Configuration package."""

from src.config.settings import (
    AppSettings,
    DatabaseSettings,
    GoogleSheetsSettings,
    LedgerSettings,
    SchedulerSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "GoogleSheetsSettings",
    "LedgerSettings",
    "SchedulerSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
