"""
Contact data model for CardDAV synchronization.

Provides the local and remote contact representations:
- LocalContact: a record in the local store, with its ownership and the
  link to its remote copy
- RemoteContact: a contact as returned by the bridge for one address book
- RemoteLink: the metadata tying a local record to its server copy
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from carddav_sync.utils.vcard import extract_display_name, extract_uid


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a stored or wire timestamp into an aware UTC datetime.

    Accepts datetimes, ISO 8601 strings (with or without a trailing Z) and
    epoch milliseconds. Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class Ownership(str, Enum):
    """Who is authoritative for a local contact."""

    OWNED = "owned"  # Created locally by the user
    IMPORTED = "imported"  # Created by a pull from the server
    SHARED = "shared"  # Received from another user, read-only here


@dataclass
class RemoteLink:
    """
    Link between a local contact and its copy on a CardDAV server.

    Attributes:
        uid: vCard UID used as the cross-system identity
        etag: Server version tag last seen, None if never confirmed
        href: Server resource path of the contact
        address_book: Address book the remote copy lives in
        last_synced_at: When the link was last written by a sync cycle
        connection_id: Connection that issued the etag
        last_force_push_at: Last protection force-push, if any
    """

    uid: str
    etag: Optional[str] = None
    href: Optional[str] = None
    address_book: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    connection_id: Optional[str] = None
    last_force_push_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "uid": self.uid,
            "etag": self.etag,
            "href": self.href,
            "address_book": self.address_book,
            "last_synced_at": (
                self.last_synced_at.isoformat() if self.last_synced_at else None
            ),
            "connection_id": self.connection_id,
            "last_force_push_at": (
                self.last_force_push_at.isoformat()
                if self.last_force_push_at
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteLink:
        """Create a RemoteLink from a dictionary produced by to_dict()."""
        return cls(
            uid=data["uid"],
            etag=data.get("etag"),
            href=data.get("href"),
            address_book=data.get("address_book"),
            last_synced_at=parse_timestamp(data.get("last_synced_at")),
            connection_id=data.get("connection_id"),
            last_force_push_at=parse_timestamp(data.get("last_force_push_at")),
        )


@dataclass
class LocalContact:
    """
    A contact record in the local store.

    Attributes:
        contact_id: Store-assigned identifier
        vcard_text: Raw vCard text
        ownership: OWNED, IMPORTED or SHARED
        display_name: Name shown in listings and logs
        remote_link: Link to the server copy, None if never synced
        is_archived: Archived contacts never sync
        is_deleted: Soft-deleted contacts never sync
        created_at: Creation timestamp
        last_modified_at: Last user-visible content change

    Usage:
        contact = store.create("BEGIN:VCARD\\n...", Ownership.OWNED)
        if contact.uid is None:
            ...
    """

    contact_id: str
    vcard_text: str
    ownership: Ownership = Ownership.OWNED
    display_name: str = ""
    remote_link: Optional[RemoteLink] = None
    is_archived: bool = False
    is_deleted: bool = False
    created_at: Optional[datetime] = None
    last_modified_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not isinstance(self.ownership, Ownership):
            self.ownership = Ownership(self.ownership)
        if not self.display_name:
            self.display_name = extract_display_name(self.vcard_text)

    @property
    def uid(self) -> Optional[str]:
        """
        The vCard UID, falling back to the remote link's UID.

        A SHARED contact without either is identified by its contact_id,
        the same UID a push assigns it.
        """
        uid = extract_uid(self.vcard_text)
        if uid:
            return uid
        if self.remote_link and self.remote_link.uid:
            return self.remote_link.uid
        if self.ownership is Ownership.SHARED:
            return self.contact_id
        return None

    @property
    def is_shared(self) -> bool:
        return self.ownership is Ownership.SHARED

    @property
    def is_syncable(self) -> bool:
        """Whether this contact takes part in sync at all."""
        return not (self.is_archived or self.is_deleted)

    @property
    def etag(self) -> Optional[str]:
        return self.remote_link.etag if self.remote_link else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "contact_id": self.contact_id,
            "display_name": self.display_name,
            "ownership": self.ownership.value,
            "uid": self.uid,
            "is_archived": self.is_archived,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_modified_at": (
                self.last_modified_at.isoformat() if self.last_modified_at else None
            ),
            "remote_link": self.remote_link.to_dict() if self.remote_link else None,
        }

    def __str__(self) -> str:
        return f"{self.display_name or '(unnamed)'} [{self.ownership.value}]"


@dataclass
class RemoteContact:
    """
    A contact as reported by the bridge for one address book.

    Attributes:
        uid: vCard UID
        vcard_text: Raw vCard text as stored on the server
        etag: Server version tag
        href: Server resource path
        address_book: Address book the contact was found in
        display_name: Name reported by the bridge or read from FN
    """

    uid: Optional[str]
    vcard_text: str
    etag: Optional[str] = None
    href: Optional[str] = None
    address_book: Optional[str] = None
    display_name: str = ""

    @classmethod
    def from_bridge_response(
        cls, data: dict[str, Any], default_address_book: Optional[str] = None
    ) -> RemoteContact:
        """
        Create a RemoteContact from a bridge JSON record.

        Args:
            data: Record from the bridge, e.g.::

                {
                    'uid': 'abc-123',
                    'vcard': 'BEGIN:VCARD...',
                    'etag': '"6f2a"',
                    'href': '/dav.php/addressbooks/u/my-contacts/abc-123.vcf',
                    'addressbook': 'my-contacts',
                    'name': 'Ada Lovelace'
                }

            default_address_book: Used when the record names no address book

        Returns:
            RemoteContact instance
        """
        vcard_text = data.get("vcard") or data.get("vcardData") or ""
        uid = data.get("uid") or extract_uid(vcard_text)
        display_name = data.get("name") or extract_display_name(vcard_text)

        return cls(
            uid=uid or None,
            vcard_text=vcard_text,
            etag=data.get("etag"),
            href=data.get("href") or data.get("url"),
            address_book=data.get("addressbook")
            or data.get("address_book")
            or default_address_book,
            display_name=display_name,
        )

    def __str__(self) -> str:
        return f"{self.display_name or '(unnamed)'} <{self.uid}>"
