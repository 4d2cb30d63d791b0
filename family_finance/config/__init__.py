"""Configuration package."""

from family_finance.config.settings import (
    AppSettings,
    CacheSettings,
    ReconciliationSettings,
    Settings,
    SyncSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "CacheSettings",
    "ReconciliationSettings",
    "Settings",
    "SyncSettings",
    "get_settings",
    "validate_all_settings",
]
