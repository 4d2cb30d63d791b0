"""
Configuration Management for Family Finance

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All tunables of the reconciliation and sync core live here.
Thresholds such as the balance epsilon or retry counts are never hard-coded
at call sites, so tests and deployments can change them in one place.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ReconciliationSettings(BaseSettings):
    """Balance reconciliation configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FINANCE_RECON_",
        extra="ignore"
    )

    balance_epsilon: float = Field(
        default=0.001,
        gt=0.0,
        description="Stored and recomputed balances closer than this are considered equal"
    )
    money_places: int = Field(
        default=2,
        ge=0,
        le=6,
        description="Decimal places monetary values are rounded to"
    )


class SyncSettings(BaseSettings):
    """Offline queue and drain configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FINANCE_SYNC_",
        extra="ignore"
    )

    queue_cache_key: str = Field(
        default="sync_queue",
        description="Cache key the pending-operation queue is persisted under"
    )
    id_map_cache_key: str = Field(
        default="sync_id_map",
        description="Cache key for the temporary -> server identifier map"
    )
    temp_id_prefix: str = Field(
        default="offline",
        min_length=1,
        description="Prefix of client-generated temporary identifiers"
    )

    # Retry of a single remote write during drain
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per operation before it is left queued"
    )
    retry_wait_min: float = Field(
        default=1.0,
        ge=0.0,
        description="Minimum backoff between attempts (seconds)"
    )
    retry_wait_max: float = Field(
        default=10.0,
        ge=0.0,
        description="Maximum backoff between attempts (seconds)"
    )
    operation_timeout_seconds: Optional[float] = Field(
        default=None,
        description="Per-operation submit timeout during drain (None = no timeout)"
    )


class CacheSettings(BaseSettings):
    """Local cache configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FINANCE_CACHE_",
        extra="ignore"
    )

    stale_after_seconds: int = Field(
        default=3600,
        ge=0,
        description="Cached entries older than this are reported as stale"
    )
    cache_version: str = Field(
        default="1.0",
        description="Version tag written into every cache envelope"
    )
    cache_file_path: Optional[str] = Field(
        default=None,
        description="Optional JSON file backing the in-memory cache"
    )

    @field_validator('cache_file_path')
    @classmethod
    def validate_cache_file_path(cls, v: Optional[str]) -> Optional[str]:
        """Warn if the cache directory doesn't exist (but don't fail - might be mounted later)."""
        if v and not Path(v).parent.exists():
            import warnings
            warnings.warn(
                f"Cache directory not found for {v}. "
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

    # Environment
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
        description="Minimum level for structured logs"
    )
    default_currency: str = Field(
        default="GHS",
        min_length=3,
        max_length=3,
        description="Currency assigned to accounts created without one"
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

    @property
    def reconciliation(self) -> ReconciliationSettings:
        return ReconciliationSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def cache(self) -> CacheSettings:
        return CacheSettings()

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
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("reconciliation", "sync", "cache", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
