"""
Locations of carddav-sync's files.

Everything the tool writes lives in one configuration directory: the YAML
config, the SQLite contact store, the daemon PID file and the logs.
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".carddav-sync"

# Overrides the default directory when no explicit one is given
CONFIG_DIR_ENV_VAR = "CARDDAV_SYNC_CONFIG_DIR"

STORE_FILE_NAME = "contacts.db"
PID_FILE_NAME = "daemon.pid"
LOGS_DIR_NAME = "logs"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory.

    An explicit directory wins over $CARDDAV_SYNC_CONFIG_DIR, which wins
    over ~/.carddav-sync. The result is expanded and absolute.
    """
    if config_dir is not None:
        chosen = Path(config_dir)
    elif os.environ.get(CONFIG_DIR_ENV_VAR):
        chosen = Path(os.environ[CONFIG_DIR_ENV_VAR])
    else:
        chosen = DEFAULT_CONFIG_DIR
    return chosen.expanduser().resolve()


def config_path(name: str, config_dir: Path | str | None = None) -> Path:
    """
    Path of a file or directory inside the configuration directory.

    Usage:
        store = config_path(STORE_FILE_NAME)
        pid_file = config_path(PID_FILE_NAME, "/etc/carddav-sync")
    """
    return resolve_config_dir(config_dir) / name
