"""
Catalog Sync - Core Module

Settings, logging, error taxonomy and database pool helpers.
"""

from .config import Settings, get_settings, reset_settings
from .errors import (
    CatalogAPIError,
    CatalogSyncError,
    ConfigurationError,
    DispatchFailedError,
    InvalidJobPayloadError,
    JobTimeoutError,
    MalformedRowError,
    StoreUnavailableError,
)
from .logging import LogContext, Timer, configure_logging

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "reset_settings",
    # Errors
    "CatalogAPIError",
    "CatalogSyncError",
    "ConfigurationError",
    "DispatchFailedError",
    "InvalidJobPayloadError",
    "JobTimeoutError",
    "MalformedRowError",
    "StoreUnavailableError",
    # Logging
    "LogContext",
    "Timer",
    "configure_logging",
]
