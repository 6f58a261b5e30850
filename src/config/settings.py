"""
Configuration Management for the Personal Ledger

Every tunable of the ledger lives here and is read from the environment
(or .env) through pydantic-settings, one prefix per section:

- LEDGER_         unit-of-work timeout, retry policy, currency policy
- DATABASE_       SQL backend
- BILLING_        daily billing trigger
- GOOGLE_SHEETS_  optional audit sink

DESIGN DECISION: Sections are loaded lazily so a missing optional section
(Sheets) never blocks the ledger from starting.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Ledger mutation engine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    storage_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=300,
        description="Upper bound for one atomic unit of work"
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for a unit that fails with a transient error"
    )
    retry_wait_min_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Minimum backoff between transient retries"
    )
    retry_wait_max_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Maximum backoff between transient retries"
    )
    allow_cross_currency_moves: bool = Field(
        default=False,
        description=(
            "Allow moving a transaction to an account with another currency. "
            "The amount is reinterpreted unchanged; no conversion is done."
        )
    )

    @model_validator(mode="after")
    def validate_backoff(self) -> "LedgerSettings":
        if self.retry_wait_max_seconds < self.retry_wait_min_seconds:
            raise ValueError("retry_wait_max_seconds cannot be below retry_wait_min_seconds")
        return self


class DatabaseSettings(BaseSettings):
    """SQL storage backend configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite:///./ledger.db",
        description="SQLAlchemy database URL"
    )
    echo: bool = Field(
        default=False,
        description="Log emitted SQL"
    )
    pool_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait for a pooled connection"
    )


class SchedulerSettings(BaseSettings):
    """Recurring billing scheduler configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    enabled: bool = Field(
        default=True,
        description="Run the daily billing timer"
    )
    run_hour_utc: int = Field(
        default=0,
        ge=0,
        le=23,
        description="Hour of day (UTC) at which the daily run fires"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets audit sink configuration (optional)."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )
    audit_sheet_name: str = Field(
        default="LedgerAudit",
        description="Name of the sheet for audit logs"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Root log level for the structured logger"
    )


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

    # Note: These are loaded lazily to allow partial configuration

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def scheduler(self) -> SchedulerSettings:
        return SchedulerSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

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


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks. The Google Sheets audit sink is optional,
    so a False there only means audit events stay local.
    """
    results = {}

    settings = get_settings()

    for name in ("ledger", "database", "scheduler", "google_sheets", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
