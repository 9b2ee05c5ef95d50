"""
Capability registry for CardDAV servers.

Classifies a server by URL pattern (or explicit configuration) into a
capability record describing whether it enforces read-only address books
and whether it exposes more than one address book. The record decides
contact routing and whether shared contacts must be protected by this
client rather than by the server.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional

from carddav_sync.sync.contact import LocalContact, Ownership

logger = logging.getLogger(__name__)

# Address book names used when the connection does not override them
DEFAULT_READ_WRITE_ADDRESS_BOOK = "my-contacts"
DEFAULT_READ_ONLY_ADDRESS_BOOK = "shared-contacts"
DEFAULT_SINGLE_ADDRESS_BOOK = "default"


class ProtectionStrategy(Enum):
    """Who enforces read-only semantics on shared contacts."""

    SERVER_SIDE = "server_side_acl"
    CLIENT_SIDE = "client_side_validation"


@dataclass(frozen=True)
class ServerCapabilities:
    """
    Capability record for one connection.

    Attributes:
        server_type: Human-readable server flavor (e.g. "Baikal")
        supports_access_control: Server enforces read-only address books
        supports_multiple_address_books: Server exposes separate books
        vcard_version: vCard version the server prefers
        read_write_address_book: Routing target for OWNED/IMPORTED contacts
        read_only_address_book: Routing target for SHARED contacts
        default_address_book: Routing target when books are not separated
        notes: Free-form description for status output
    """

    server_type: str
    supports_access_control: bool
    supports_multiple_address_books: bool
    vcard_version: str = "4.0"
    read_write_address_book: str = DEFAULT_READ_WRITE_ADDRESS_BOOK
    read_only_address_book: str = DEFAULT_READ_ONLY_ADDRESS_BOOK
    default_address_book: str = DEFAULT_SINGLE_ADDRESS_BOOK
    notes: str = ""

    @property
    def protection_strategy(self) -> ProtectionStrategy:
        """Server-side only when read-only books exist and are separate."""
        if self.supports_access_control and self.supports_multiple_address_books:
            return ProtectionStrategy.SERVER_SIDE
        return ProtectionStrategy.CLIENT_SIDE

    @property
    def needs_client_protection(self) -> bool:
        return self.protection_strategy is ProtectionStrategy.CLIENT_SIDE

    def route(self, ownership: Ownership) -> str:
        """
        Return the address book a contact of this ownership is pushed to.

        SHARED contacts go to the read-only book, everything else to the
        read-write book. Servers without separate books get the single
        default book for everything.
        """
        if not self.supports_multiple_address_books:
            return self.default_address_book

        if ownership is Ownership.SHARED:
            return self.read_only_address_book

        return self.read_write_address_book

    def route_contact(self, contact: LocalContact) -> str:
        return self.route(contact.ownership)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "server_type": self.server_type,
            "supports_access_control": self.supports_access_control,
            "supports_multiple_address_books": self.supports_multiple_address_books,
            "protection_strategy": self.protection_strategy.value,
            "vcard_version": self.vcard_version,
            "read_write_address_book": self.read_write_address_book,
            "read_only_address_book": self.read_only_address_book,
            "default_address_book": self.default_address_book,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class ServerProfile:
    """A known server flavor matched by URL substrings."""

    patterns: tuple[str, ...]
    capabilities: ServerCapabilities


ICLOUD = ServerCapabilities(
    server_type="iCloud",
    supports_access_control=False,
    supports_multiple_address_books=False,
    vcard_version="3.0",
    notes="Single address book, no ACL - client-side protection required",
)

BAIKAL = ServerCapabilities(
    server_type="Baikal",
    supports_access_control=True,
    supports_multiple_address_books=True,
    notes="Full ACL support with separate address books",
)

NEXTCLOUD = ServerCapabilities(
    server_type="Nextcloud/ownCloud",
    supports_access_control=True,
    supports_multiple_address_books=True,
    notes="Full ACL support with separate address books",
)

GOOGLE = ServerCapabilities(
    server_type="Google Contacts",
    supports_access_control=False,
    supports_multiple_address_books=False,
    vcard_version="3.0",
    notes="Single address book, no ACL - client-side protection required",
)

GENERIC = ServerCapabilities(
    server_type="Generic CardDAV",
    supports_access_control=False,
    supports_multiple_address_books=False,
    notes="Unknown server - using client-side protection",
)

# First match wins
KNOWN_SERVERS: tuple[ServerProfile, ...] = (
    ServerProfile(("icloud.com", "apple.com", "me.com", "mac.com"), ICLOUD),
    ServerProfile(("dav.php", "baikal"), BAIKAL),
    ServerProfile(("nextcloud", "owncloud"), NEXTCLOUD),
    ServerProfile(("google", "gmail"), GOOGLE),
)

SERVER_TYPES: dict[str, ServerCapabilities] = {
    "icloud": ICLOUD,
    "baikal": BAIKAL,
    "nextcloud": NEXTCLOUD,
    "owncloud": NEXTCLOUD,
    "google": GOOGLE,
    "generic": GENERIC,
}


def detect_capabilities(
    server_url: str,
    server_type: Optional[str] = None,
    supports_access_control: Optional[bool] = None,
    supports_multiple_address_books: Optional[bool] = None,
    address_books: Optional[dict[str, str]] = None,
) -> ServerCapabilities:
    """
    Build the capability record for a server.

    Explicit arguments override URL detection. A server claiming access
    control without separate address books cannot route shared contacts to
    a read-only book, so it is treated as having no access control.

    Args:
        server_url: CardDAV server URL
        server_type: Explicit flavor name (see SERVER_TYPES), skips URL matching
        supports_access_control: Explicit override
        supports_multiple_address_books: Explicit override
        address_books: Optional overrides for the keys ``read_write``,
            ``read_only`` and ``default``

    Returns:
        ServerCapabilities record

    Raises:
        ValueError: If server_type names an unknown flavor
    """
    if server_type is not None:
        key = server_type.strip().lower()
        if key not in SERVER_TYPES:
            raise ValueError(
                f"Unknown server type '{server_type}'. "
                f"Valid types: {', '.join(sorted(SERVER_TYPES))}"
            )
        capabilities = SERVER_TYPES[key]
    else:
        capabilities = _match_url(server_url)

    overrides: dict[str, Any] = {}
    if supports_access_control is not None:
        overrides["supports_access_control"] = supports_access_control
    if supports_multiple_address_books is not None:
        overrides["supports_multiple_address_books"] = supports_multiple_address_books
    if address_books:
        for key, attr in (
            ("read_write", "read_write_address_book"),
            ("read_only", "read_only_address_book"),
            ("default", "default_address_book"),
        ):
            if address_books.get(key):
                overrides[attr] = address_books[key]

    if overrides:
        capabilities = replace(capabilities, **overrides)

    if (
        capabilities.supports_access_control
        and not capabilities.supports_multiple_address_books
    ):
        logger.warning(
            f"{capabilities.server_type}: access control without separate "
            "address books cannot protect shared contacts, "
            "falling back to client-side protection"
        )
        capabilities = replace(capabilities, supports_access_control=False)

    logger.debug(
        f"Capabilities for {server_url}: {capabilities.server_type}, "
        f"strategy={capabilities.protection_strategy.value}"
    )
    return capabilities


def _match_url(server_url: str) -> ServerCapabilities:
    url = (server_url or "").lower()
    for profile in KNOWN_SERVERS:
        if any(pattern in url for pattern in profile.patterns):
            return profile.capabilities

    logger.warning(
        f"Unknown CardDAV server type for {server_url}, assuming no ACL support"
    )
    return GENERIC

