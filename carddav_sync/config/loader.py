"""
Configuration loader module for CardDAV synchronization.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Validation of keys, types, ranges and connection entries
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from carddav_sync.daemon import parse_interval
from carddav_sync.utils import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)

# Keys whose value is an interval ("30s", "5m", or a number of seconds)
INTERVAL_KEYS = (
    "pull_interval",
    "push_interval",
    "push_offset",
    "heartbeat_interval",
    "protection_interval",
    "refresh_interval",
)

VALID_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    # CLI options
    "verbose": bool,
    # Bridge options
    "bridge_url": str,
    "bridge_timeout": (int, float),
    "bridge_max_retries": int,
    "bridge_initial_retry_delay": (int, float),
    "bridge_max_retry_delay": (int, float),
    # Store options
    "store_path": str,
    # Scheduling options
    **{key: (str, int) for key in INTERVAL_KEYS},
    "initial_sync_settle": (int, float),
    "max_pending_syncs": int,
    # Push options
    "push_concurrency": int,
    "change_skip_enabled": bool,
    "clock_skew_margin": (int, float),
    # Logging options
    "log_dir": str,
    "log_retention_count": int,
    # Connections
    "connections": list,
}

CONNECTION_KEYS = {
    "profile_name",
    "server_url",
    "username",
    "password_env",
    "server_type",
    "supports_access_control",
    "supports_multiple_address_books",
    "read_write_address_book",
    "read_only_address_book",
    "default_address_book",
}


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


def _type_name(expected: type[Any] | tuple[type[Any], ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


class ConfigLoader:
    """
    YAML configuration file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load_and_validate()

        # Load from specific file
        config = loader.load_from_file("/path/to/config.yaml")
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.carddav-sync/ or $CARDDAV_SYNC_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    @property
    def config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Configuration values, or an empty dict if the file doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self.config_path)

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Args:
            path: Path to the configuration file

        Returns:
            Configuration values, or an empty dict if the file doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path).expanduser()

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if config is None:
            logger.debug(f"Configuration file is empty: {path}")
            return {}

        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )

        logger.debug(f"Loaded configuration from {path}")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration structure and values.

        Unknown keys are logged and ignored.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            if key not in VALID_KEYS:
                logger.warning(f"Ignoring unknown configuration key '{key}'")
                continue
            expected_type = VALID_KEYS[key]
            # bool is an int subclass; only accept it where bool is expected
            if (isinstance(value, bool) and expected_type is not bool) or not isinstance(
                value, expected_type
            ):
                raise ConfigError(
                    f"Invalid type for '{key}': expected {_type_name(expected_type)}, "
                    f"got {type(value).__name__}"
                )

        for key in INTERVAL_KEYS:
            if key not in config:
                continue
            if key == "push_offset" and config[key] in (0, "0"):
                continue
            try:
                parse_interval(config[key])
            except ValueError as e:
                raise ConfigError(f"Invalid {key}: {e}") from e

        positive_int_keys = [
            "bridge_max_retries",
            "push_concurrency",
            "max_pending_syncs",
        ]
        for key in positive_int_keys:
            if key in config and config[key] < 1:
                raise ConfigError(f"{key} must be >= 1, got {config[key]}")

        positive_float_keys = [
            "bridge_timeout",
            "bridge_initial_retry_delay",
            "bridge_max_retry_delay",
        ]
        for key in positive_float_keys:
            if key in config and config[key] <= 0:
                raise ConfigError(f"{key} must be > 0, got {config[key]}")

        non_negative_keys = [
            "initial_sync_settle",
            "clock_skew_margin",
            "log_retention_count",
        ]
        for key in non_negative_keys:
            if key in config and config[key] < 0:
                raise ConfigError(f"{key} must be >= 0, got {config[key]}")

        if "bridge_url" in config and not config["bridge_url"].startswith(
            ("http://", "https://")
        ):
            raise ConfigError(
                f"bridge_url must be an http(s) URL, got '{config['bridge_url']}'"
            )

        self._validate_connections(config.get("connections") or [])

    @staticmethod
    def _validate_connections(connections: list[Any]) -> None:
        seen: set[str] = set()
        for i, entry in enumerate(connections):
            label = f"connections[{i}]"
            if not isinstance(entry, dict):
                raise ConfigError(f"{label} must be a dictionary")

            for key in ("profile_name", "server_url", "username"):
                if not isinstance(entry.get(key), str) or not entry[key].strip():
                    raise ConfigError(f"{label}: '{key}' is required")

            if "password" in entry:
                raise ConfigError(
                    f"{label}: passwords must not be stored in the config file, "
                    "use 'password_env'"
                )

            unknown = set(entry) - CONNECTION_KEYS
            if unknown:
                logger.warning(
                    f"{label}: ignoring unknown keys {', '.join(sorted(unknown))}"
                )

            for key in ("supports_access_control", "supports_multiple_address_books"):
                if key in entry and not isinstance(entry[key], bool):
                    raise ConfigError(f"{label}: '{key}' must be a bool")

            name = entry["profile_name"]
            if name in seen:
                raise ConfigError(f"Duplicate connection profile name '{name}'")
            seen.add(name)

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Returns:
            Validated configuration dictionary

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config
