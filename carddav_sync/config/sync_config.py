"""
Typed sync settings built from the YAML configuration.

Provides:
- ConnectionConfig: one remote account (profile) and its server overrides
- SyncSettings: bridge, store, scheduling and push settings plus the
  configured connections

Configuration file format (config.yaml)::

    bridge_url: http://localhost:3001
    pull_interval: 5m
    push_interval: 5m
    connections:
      - profile_name: work
        server_url: https://dav.example.com/dav.php
        username: ada
        password_env: WORK_CARDDAV_PASSWORD
      - profile_name: phone
        server_url: https://contacts.icloud.com
        username: ada@example.com
        password_env: ICLOUD_APP_PASSWORD

Notes:
    - Passwords are never stored in the file; ``password_env`` names the
      environment variable holding it
    - Server capability keys override URL detection
    - Intervals accept seconds or strings like "30s", "5m", "1h"
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from carddav_sync.api.bridge_api import (
    DEFAULT_BRIDGE_URL,
    DEFAULT_INITIAL_RETRY_DELAY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_TIMEOUT,
)
from carddav_sync.daemon import ScheduleIntervals, parse_interval
from carddav_sync.sync.capabilities import SERVER_TYPES
from carddav_sync.sync.lane import DEFAULT_MAX_PENDING
from carddav_sync.sync.push import DEFAULT_CONCURRENCY
from carddav_sync.utils import STORE_FILE_NAME, config_path

logger = logging.getLogger(__name__)

# Seconds between the initial pull and the initial push
DEFAULT_INITIAL_SYNC_SETTLE = 2.0


class SyncConfigError(Exception):
    """Raised when sync settings are missing or invalid."""

    pass


def _optional(data: dict[str, Any], key: str, expected: type, label: str) -> Any:
    value = data.get(key)
    if value is not None and not isinstance(value, expected):
        raise SyncConfigError(
            f"{label}.{key} must be a {expected.__name__}, got {type(value).__name__}"
        )
    return value


@dataclass
class ConnectionConfig:
    """
    Configuration of one remote account.

    Attributes:
        profile_name: Connection id, also the bridge profile name
        server_url: CardDAV server URL
        username: Account user name
        password_env: Environment variable holding the password
        server_type: Explicit server flavor, skips URL detection
        supports_access_control: Explicit capability override
        supports_multiple_address_books: Explicit capability override
        read_write_address_book: Address book for owned/imported contacts
        read_only_address_book: Address book for shared contacts
        default_address_book: Address book on single-book servers
        password: Password given programmatically instead of via env

    Usage:
        config = ConnectionConfig.from_dict(
            {"profile_name": "work", "server_url": "https://dav.example.com",
             "username": "ada", "password_env": "WORK_PASSWORD"}
        )
        payload = config.to_bridge_payload(config.resolve_password())
    """

    profile_name: str
    server_url: str
    username: str
    password_env: str | None = None
    server_type: str | None = None
    supports_access_control: bool | None = None
    supports_multiple_address_books: bool | None = None
    read_write_address_book: str | None = None
    read_only_address_book: str | None = None
    default_address_book: str | None = None
    password: str | None = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: Any, index: int = 0) -> ConnectionConfig:
        """
        Create a ConnectionConfig from one entry of ``connections``.

        Raises:
            SyncConfigError: If a required key is missing or a value invalid
        """
        label = f"connections[{index}]"
        if not isinstance(data, dict):
            raise SyncConfigError(
                f"{label} must be a dictionary, got {type(data).__name__}"
            )

        for key in ("profile_name", "server_url", "username"):
            value = data.get(key)
            if not isinstance(value, str) or not value.strip():
                raise SyncConfigError(f"{label}.{key} is required")

        server_type = _optional(data, "server_type", str, label)
        if server_type is not None and server_type.strip().lower() not in SERVER_TYPES:
            raise SyncConfigError(
                f"{label}.server_type '{server_type}' is not one of: "
                f"{', '.join(sorted(SERVER_TYPES))}"
            )

        return cls(
            profile_name=data["profile_name"].strip(),
            server_url=data["server_url"].strip(),
            username=data["username"],
            password_env=_optional(data, "password_env", str, label),
            server_type=server_type,
            supports_access_control=_optional(
                data, "supports_access_control", bool, label
            ),
            supports_multiple_address_books=_optional(
                data, "supports_multiple_address_books", bool, label
            ),
            read_write_address_book=_optional(
                data, "read_write_address_book", str, label
            ),
            read_only_address_book=_optional(data, "read_only_address_book", str, label),
            default_address_book=_optional(data, "default_address_book", str, label),
        )

    def resolve_password(self) -> str | None:
        """
        Return the password from the explicit field or the environment.

        Raises:
            SyncConfigError: If ``password_env`` names an unset variable
        """
        if self.password is not None:
            return self.password
        if not self.password_env:
            return None
        value = os.environ.get(self.password_env)
        if value is None:
            raise SyncConfigError(
                f"Environment variable {self.password_env} for connection "
                f"'{self.profile_name}' is not set"
            )
        return value

    def address_book_overrides(self) -> dict[str, str]:
        overrides = {
            "read_write": self.read_write_address_book,
            "read_only": self.read_only_address_book,
            "default": self.default_address_book,
        }
        return {k: v for k, v in overrides.items() if v}

    def to_bridge_payload(self, password: str | None) -> dict[str, Any]:
        """Body of the bridge ``connect`` call."""
        return {
            "profileName": self.profile_name,
            "serverUrl": self.server_url,
            "username": self.username,
            "password": password,
        }

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "profile_name": self.profile_name,
            "server_url": self.server_url,
            "username": self.username,
        }
        for key in (
            "password_env",
            "server_type",
            "supports_access_control",
            "supports_multiple_address_books",
            "read_write_address_book",
            "read_only_address_book",
            "default_address_book",
        ):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result


@dataclass
class SyncSettings:
    """
    All settings needed to run the sync engine.

    Built from the validated config dictionary; missing keys take their
    defaults.
    """

    bridge_url: str = DEFAULT_BRIDGE_URL
    bridge_timeout: float = DEFAULT_TIMEOUT
    bridge_max_retries: int = DEFAULT_MAX_RETRIES
    bridge_initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY
    bridge_max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY
    store_path: Path = field(
        default_factory=lambda: config_path(STORE_FILE_NAME)
    )
    intervals: ScheduleIntervals = field(default_factory=ScheduleIntervals)
    initial_sync_settle: float = DEFAULT_INITIAL_SYNC_SETTLE
    push_concurrency: int = DEFAULT_CONCURRENCY
    max_pending_syncs: int = DEFAULT_MAX_PENDING
    change_skip_enabled: bool = True
    clock_skew_margin: float = 0.0
    connections: list[ConnectionConfig] = field(default_factory=list)

    @classmethod
    def from_dict(
        cls, config: dict[str, Any], config_dir: Path | str | None = None
    ) -> SyncSettings:
        """
        Create SyncSettings from a loaded config dictionary.

        Args:
            config: Dictionary from ConfigLoader (validated or not)
            config_dir: Directory used for the default store path

        Raises:
            SyncConfigError: If a value cannot be interpreted
        """
        if not isinstance(config, dict):
            raise SyncConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        try:
            intervals = ScheduleIntervals(
                pull=_seconds(config, "pull_interval", ScheduleIntervals.pull),
                push=_seconds(config, "push_interval", ScheduleIntervals.push),
                push_offset=_seconds(
                    config, "push_offset", ScheduleIntervals.push_offset, allow_zero=True
                ),
                heartbeat=_seconds(
                    config, "heartbeat_interval", ScheduleIntervals.heartbeat
                ),
                protection=_seconds(
                    config, "protection_interval", ScheduleIntervals.protection
                ),
                refresh=_seconds(config, "refresh_interval", ScheduleIntervals.refresh),
            )
        except ValueError as e:
            raise SyncConfigError(str(e)) from e

        raw_connections = config.get("connections") or []
        if not isinstance(raw_connections, list):
            raise SyncConfigError(
                f"connections must be a list, got {type(raw_connections).__name__}"
            )
        connections = [
            ConnectionConfig.from_dict(item, i) for i, item in enumerate(raw_connections)
        ]
        names = [c.profile_name for c in connections]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise SyncConfigError(
                f"Duplicate connection profile names: {', '.join(duplicates)}"
            )

        store_path = config.get("store_path")
        resolved_store = (
            Path(store_path).expanduser()
            if store_path
            else config_path(STORE_FILE_NAME, config_dir)
        )

        return cls(
            bridge_url=config.get("bridge_url", DEFAULT_BRIDGE_URL),
            bridge_timeout=config.get("bridge_timeout", DEFAULT_TIMEOUT),
            bridge_max_retries=config.get("bridge_max_retries", DEFAULT_MAX_RETRIES),
            bridge_initial_retry_delay=config.get(
                "bridge_initial_retry_delay", DEFAULT_INITIAL_RETRY_DELAY
            ),
            bridge_max_retry_delay=config.get(
                "bridge_max_retry_delay", DEFAULT_MAX_RETRY_DELAY
            ),
            store_path=resolved_store,
            intervals=intervals,
            initial_sync_settle=config.get(
                "initial_sync_settle", DEFAULT_INITIAL_SYNC_SETTLE
            ),
            push_concurrency=config.get("push_concurrency", DEFAULT_CONCURRENCY),
            max_pending_syncs=config.get("max_pending_syncs", DEFAULT_MAX_PENDING),
            change_skip_enabled=config.get("change_skip_enabled", True),
            clock_skew_margin=config.get("clock_skew_margin", 0.0),
            connections=connections,
        )

    def get_connection(self, profile_name: str) -> ConnectionConfig:
        """
        Look up a configured connection.

        Raises:
            SyncConfigError: If no connection has that profile name
        """
        for connection in self.connections:
            if connection.profile_name == profile_name:
                return connection
        known = ", ".join(c.profile_name for c in self.connections) or "none"
        raise SyncConfigError(
            f"No connection named '{profile_name}' (configured: {known})"
        )


def _seconds(
    config: dict[str, Any], key: str, default: float, allow_zero: bool = False
) -> float:
    value = config.get(key)
    if value is None:
        return default
    if allow_zero and value in (0, "0"):
        return 0
    try:
        return parse_interval(value)
    except ValueError as e:
        raise ValueError(f"{key}: {e}") from e
