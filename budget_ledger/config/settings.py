"""
Configuration Management for the Budget Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CATALOG_PATH = Path(__file__).with_name("default_catalog.json")


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""

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

    # Worksheet names within the spreadsheet
    settings_sheet_name: str = Field(
        default="BudgetSettings",
        description="Name of the sheet holding one total budget per owner"
    )
    categories_sheet_name: str = Field(
        default="BudgetCategories",
        description="Name of the sheet for budget categories"
    )
    expenses_sheet_name: str = Field(
        default="Expenses",
        description="Name of the sheet for expenses"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
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


class LedgerSettings(BaseSettings):
    """
    Ledger engine settings.

    Loads configuration from LEDGER_* environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    storage_backend: Literal["memory", "google_sheets"] = Field(
        default="memory",
        description="Which persistence gateway to use"
    )

    # Budget defaults
    default_total_budget: Decimal = Field(
        default=Decimal("1500000"),
        ge=0,
        description="Total budget given to an owner on first access"
    )
    catalog_path: Optional[str] = Field(
        default=None,
        description="Path to the category catalog JSON (packaged default if unset)"
    )

    # Store access
    store_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout applied to every store call when the caller gives none"
    )

    # Re-derivation retries after a partial commit
    reconcile_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts at re-deriving a category before flagging it"
    )
    reconcile_retry_min_wait: float = Field(
        default=0.2,
        ge=0,
        description="Minimum backoff between re-derivation attempts (seconds)"
    )
    reconcile_retry_max_wait: float = Field(
        default=2.0,
        ge=0,
        description="Maximum backoff between re-derivation attempts (seconds)"
    )

    # Notifications and sweeps
    notify_coalesce_seconds: float = Field(
        default=0.05,
        ge=0,
        description="Window in which rapid changes collapse into one notification"
    )
    sweep_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Interval of the periodic integrity sweep"
    )

    @property
    def resolved_catalog_path(self) -> Path:
        """Catalog file to load, falling back to the packaged default."""
        if self.catalog_path:
            return Path(self.catalog_path)
        return DEFAULT_CATALOG_PATH


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
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()


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
    Google Sheets is only checked when it is the selected backend.
    """
    results = {}

    settings = get_settings()

    try:
        ledger = settings.ledger
        results["ledger"] = True
    except Exception as e:
        results["ledger"] = False
        results["ledger_error"] = str(e)
        return results

    if ledger.storage_backend == "google_sheets":
        try:
            _ = settings.google_sheets
            results["google_sheets"] = True
        except Exception as e:
            results["google_sheets"] = False
            results["google_sheets_error"] = str(e)

    return results
