"""
gcontact_import.config - Configuration management module

Contains configuration loading, validation, and default settings.
"""

from gcontact_import.config.loader import ConfigError, ConfigLoader
from gcontact_import.config.sync_config import (
    COUNTER_BACKEND_REDIS,
    COUNTER_BACKEND_SQLITE,
    ImportConfig,
    ImportConfigError,
    RateLimitConfig,
    SyncSettings,
    load_config,
)

__all__ = [
    "COUNTER_BACKEND_REDIS",
    "COUNTER_BACKEND_SQLITE",
    "ConfigError",
    "ConfigLoader",
    "ImportConfig",
    "ImportConfigError",
    "RateLimitConfig",
    "SyncSettings",
    "load_config",
]
