"""
carddav_sync.config - Configuration management module

Contains configuration loading, validation, and typed sync settings.
"""

from carddav_sync.config.loader import ConfigError, ConfigLoader
from carddav_sync.config.sync_config import (
    ConnectionConfig,
    SyncConfigError,
    SyncSettings,
)

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "ConnectionConfig",
    "SyncConfigError",
    "SyncSettings",
]
