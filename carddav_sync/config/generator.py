"""
Configuration file generator for CardDAV synchronization.

Generates a default configuration file documenting every option.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """
    Generate default YAML configuration with all options documented.

    Returns:
        String containing YAML configuration with comments
    """
    return """# CardDAV Sync Configuration
# ==========================
#
# Save as ~/.carddav-sync/config.yaml (or pass --config-file).
# CLI arguments always override these values.

# Bridge
# ------

# URL of the CardDAV bridge process
# Default: http://localhost:3001
# bridge_url: http://localhost:3001

# Request timeout in seconds
# Default: 30
# bridge_timeout: 30

# Retries for network errors, HTTP 429 and 5xx responses
# Default: 3 attempts, 1s initial delay, 30s maximum delay
# bridge_max_retries: 3
# bridge_initial_retry_delay: 1.0
# bridge_max_retry_delay: 30.0


# Local Store
# -----------

# SQLite database holding the local contacts
# Default: ~/.carddav-sync/contacts.db
# store_path: ~/.carddav-sync/contacts.db


# Scheduling
# ----------
# Intervals accept seconds or strings like "30s", "5m", "1h".

# pull_interval: 5m
# push_interval: 5m

# Delay of the first push after the first pull, so deletions applied by a
# pull settle before anything is pushed again
# push_offset: 30s

# Liveness signal of the scheduled timers
# heartbeat_interval: 1m

# Shared-contact protection (servers without access control only)
# protection_interval: 5m
# refresh_interval: 30m

# Pause between the pull and the push of an initial sync, in seconds
# initial_sync_settle: 2

# Sync requests queued per connection before callers wait
# max_pending_syncs: 16


# Push
# ----

# Contacts pushed in parallel per group
# push_concurrency: 10

# Skip contacts not modified since their last sync
# change_skip_enabled: true

# Seconds a modification must follow the last sync to count as a change.
# Raise this if the clocks of the local device and the sync host disagree.
# clock_skew_margin: 0


# Logging
# -------

# verbose: false
# log_dir: ~/.carddav-sync/logs
# log_retention_count: 10


# Connections
# -----------
# One entry per remote account. Passwords are read from the environment
# variable named by password_env.
#
# connections:
#   - profile_name: work
#     server_url: https://dav.example.com/dav.php
#     username: ada
#     password_env: WORK_CARDDAV_PASSWORD
#
#   - profile_name: phone
#     server_url: https://contacts.icloud.com
#     username: ada@example.com
#     password_env: ICLOUD_APP_PASSWORD
#
#   # Explicit capabilities override URL detection
#   - profile_name: selfhosted
#     server_url: https://contacts.example.org
#     username: ada
#     password_env: SELFHOSTED_PASSWORD
#     server_type: nextcloud
#     supports_access_control: true
#     supports_multiple_address_books: true
#     read_write_address_book: my-contacts
#     read_only_address_book: shared-contacts
"""


def save_config_file(
    config_path: Path, overwrite: bool = False
) -> tuple[bool, str | None]:
    """
    Save the default configuration file to the given path.

    Creates parent directories if they don't exist and restricts the file
    to its owner.

    Args:
        config_path: Path where the config file should be saved
        overwrite: If True, overwrite an existing file

    Returns:
        Tuple of (success, error_message)
    """
    config_path = config_path.expanduser()

    if config_path.exists() and not overwrite:
        return (
            False,
            f"Configuration file already exists: {config_path}\n"
            "Use --force to overwrite.",
        )

    try:
        config_path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
        config_path.write_text(generate_default_config(), encoding="utf-8")
        config_path.chmod(0o600)
    except OSError as e:
        error_msg = f"Failed to create configuration file: {e}"
        logger.error(error_msg)
        return (False, error_msg)

    logger.info(f"Created configuration file: {config_path}")
    return (True, None)
