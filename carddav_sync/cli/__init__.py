"""CLI package for carddav_sync."""

from carddav_sync.cli.formatters import (
    show_capabilities,
    show_protection_result,
    show_pull_result,
    show_push_result,
    show_status,
)
from carddav_sync.cli.main import cli, get_config_dir, get_config_file
from carddav_sync.utils import DEFAULT_CONFIG_DIR

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "cli",
    "get_config_dir",
    "get_config_file",
    "show_capabilities",
    "show_protection_result",
    "show_pull_result",
    "show_push_result",
    "show_status",
]
