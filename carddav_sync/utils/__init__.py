"""
carddav_sync.utils - Utility module

Common utilities including file locations, logging configuration and vCard
helpers.
"""

from carddav_sync.utils.paths import (
    DEFAULT_CONFIG_DIR,
    PID_FILE_NAME,
    STORE_FILE_NAME,
    config_path,
    resolve_config_dir,
)
from carddav_sync.utils.vcard import extract_uid, generate_uid, with_uid

__all__ = [
    "resolve_config_dir",
    "config_path",
    "DEFAULT_CONFIG_DIR",
    "PID_FILE_NAME",
    "STORE_FILE_NAME",
    "extract_uid",
    "generate_uid",
    "with_uid",
]
