"""
carddav_sync.api - Bridge client

HTTP/JSON client for the CardDAV bridge process and its error taxonomy.
"""

from carddav_sync.api.bridge_api import (
    BridgeAPI,
    BridgeAPIError,
    ConflictError,
    ServerUnavailableError,
    TransportError,
)

__all__ = [
    "BridgeAPI",
    "BridgeAPIError",
    "ConflictError",
    "ServerUnavailableError",
    "TransportError",
]
