"""
Connections and the registry that owns them.

A Connection is one remote account reached through the bridge. The
registry is the only place connections live; components receive it (or a
Connection) explicitly.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from carddav_sync.api.bridge_api import AddressBookInfo
from carddav_sync.sync.capabilities import ServerCapabilities


class ConnectionNotFoundError(Exception):
    """Raised when an operation names an unknown connection."""

    pass


@dataclass
class Connection:
    """
    One connected remote account.

    Attributes:
        connection_id: Profile name used as the bridge connection id
        server_url: CardDAV server URL
        username: Account user name
        capabilities: Capability record of the server
        address_books: Address books found by discovery
        connected_at: When the handshake succeeded
    """

    connection_id: str
    server_url: str
    username: str
    capabilities: ServerCapabilities
    address_books: list[AddressBookInfo] = field(default_factory=list)
    connected_at: Optional[datetime] = None

    @property
    def fetch_default_address_book(self) -> str:
        """Address book assumed for remote records that do not name one."""
        if self.capabilities.supports_multiple_address_books:
            return self.capabilities.read_write_address_book
        return self.capabilities.default_address_book

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "server_url": self.server_url,
            "username": self.username,
            "capabilities": self.capabilities.to_dict(),
            "address_books": [book.name for book in self.address_books],
            "connected_at": (
                self.connected_at.isoformat() if self.connected_at else None
            ),
        }


class ConnectionRegistry:
    """
    Thread-safe registry of connections keyed by connection id.

    Usage:
        registry = ConnectionRegistry()
        registry.add(connection)
        registry.require("work").capabilities
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._lock = threading.Lock()

    def add(self, connection: Connection) -> None:
        with self._lock:
            self._connections[connection.connection_id] = connection

    def remove(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def require(self, connection_id: str) -> Connection:
        """
        Get a connection or raise.

        Raises:
            ConnectionNotFoundError: If the id is not registered
        """
        connection = self.get(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Not connected: {connection_id}")
        return connection

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._connections

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)
