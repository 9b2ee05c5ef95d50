"""
SQLite local contact store.

Provides persistent storage for local contacts with their ownership and
remote links, per-connection sync bookkeeping, and change notifications
that tell subscribers whether a write came from the sync engine.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from carddav_sync.sync.contact import (
    LocalContact,
    Ownership,
    RemoteLink,
    parse_timestamp,
    utc_now,
)
from carddav_sync.utils.vcard import extract_display_name

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS contacts (
    contact_id TEXT PRIMARY KEY,
    uid TEXT,
    vcard_text TEXT NOT NULL,
    ownership TEXT NOT NULL DEFAULT 'owned',
    display_name TEXT,
    is_archived INTEGER NOT NULL DEFAULT 0,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    last_modified_at TEXT,
    remote_uid TEXT,
    remote_etag TEXT,
    remote_href TEXT,
    remote_address_book TEXT,
    remote_last_synced_at TEXT,
    remote_connection_id TEXT,
    remote_last_force_push_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_contacts_uid ON contacts(uid);
CREATE INDEX IF NOT EXISTS idx_contacts_remote_connection
    ON contacts(remote_connection_id);

CREATE TABLE IF NOT EXISTS sync_state (
    connection_id TEXT PRIMARY KEY,
    last_pull_at TEXT,
    last_push_at TEXT,
    last_result TEXT
);
"""

CONTACT_COLUMNS = (
    "contact_id, uid, vcard_text, ownership, display_name, is_archived, "
    "is_deleted, created_at, last_modified_at, remote_uid, remote_etag, "
    "remote_href, remote_address_book, remote_last_synced_at, "
    "remote_connection_id, remote_last_force_push_at"
)

CHANGE_CREATED = "created"
CHANGE_UPDATED = "updated"
CHANGE_DELETED = "deleted"


class StoreError(Exception):
    """Raised when a contact store operation fails."""

    pass


@dataclass(frozen=True)
class ChangeNotification:
    """
    A single change to the contact store.

    Attributes:
        kind: "created", "updated" or "deleted"
        contact_id: The changed contact
        from_engine: True when the write happened while the sync engine had
            its write flag raised; UI consumers use it to skip reactive
            refreshes caused by sync
    """

    kind: str
    contact_id: str
    from_engine: bool


ChangeListener = Callable[[ChangeNotification], None]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ContactStore:
    """
    SQLite-backed local contact store.

    Provides methods for:
    - Listing, looking up (by id or vCard UID), creating, updating and
      deleting contacts
    - Updating only the remote link of a contact
    - Change notifications with an engine-write flag
    - Per-connection sync bookkeeping

    Usage:
        store = ContactStore('/path/to/contacts.db')
        store.initialize()

        # Or in-memory for testing:
        store = ContactStore(':memory:')
        store.initialize()

        unsubscribe = store.subscribe(on_change)
        with store.engine_writes():
            store.update(contact)
    """

    def __init__(self, db_path: str):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ':memory:'
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._listeners: list[ChangeListener] = []
        self._listeners_lock = threading.Lock()
        self._engine_depth = 0
        self._engine_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        In-memory databases share one connection so the schema persists;
        it is used from several sync threads, guarded by the store lock.
        File databases get a new connection each time.
        """
        if self.db_path == ":memory:":
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on error.

        Yields:
            sqlite3.Connection: Database connection
        """
        with self._lock:
            conn = self._get_connection()
            is_shared = self.db_path == ":memory:"
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                if not is_shared:
                    conn.close()

    def initialize(self) -> None:
        """Create the tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        with self._lock:
            if self._shared_connection is not None:
                self._shared_connection.close()
                self._shared_connection = None

    # =========================================================================
    # Change notifications
    # =========================================================================

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Register a change listener.

        Args:
            listener: Called with a ChangeNotification after each committed
                write

        Returns:
            A callable that removes the listener
        """
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    @property
    def engine_writing(self) -> bool:
        """True while at least one sync cycle has the write flag raised."""
        with self._engine_lock:
            return self._engine_depth > 0

    @contextmanager
    def engine_writes(self) -> Generator[None, None, None]:
        """
        Raise the engine-write flag for the duration of a sync cycle.

        Nested and concurrent cycles are counted; the flag drops when the
        last one exits.
        """
        with self._engine_lock:
            self._engine_depth += 1
        try:
            yield
        finally:
            with self._engine_lock:
                self._engine_depth -= 1

    def _notify(self, kind: str, contact_id: str) -> None:
        notification = ChangeNotification(kind, contact_id, self.engine_writing)
        with self._listeners_lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(notification)
            except Exception as e:
                logger.warning(f"Change listener failed for {contact_id}: {e}")

    # =========================================================================
    # Contact operations
    # =========================================================================

    @staticmethod
    def _row_to_contact(row: sqlite3.Row) -> LocalContact:
        remote_link = None
        if row["remote_uid"]:
            remote_link = RemoteLink(
                uid=row["remote_uid"],
                etag=row["remote_etag"],
                href=row["remote_href"],
                address_book=row["remote_address_book"],
                last_synced_at=parse_timestamp(row["remote_last_synced_at"]),
                connection_id=row["remote_connection_id"],
                last_force_push_at=parse_timestamp(row["remote_last_force_push_at"]),
            )

        return LocalContact(
            contact_id=row["contact_id"],
            vcard_text=row["vcard_text"],
            ownership=Ownership(row["ownership"]),
            display_name=row["display_name"] or "",
            remote_link=remote_link,
            is_archived=bool(row["is_archived"]),
            is_deleted=bool(row["is_deleted"]),
            created_at=parse_timestamp(row["created_at"]),
            last_modified_at=parse_timestamp(row["last_modified_at"]),
        )

    @staticmethod
    def _remote_params(remote_link: Optional[RemoteLink]) -> tuple[Any, ...]:
        if remote_link is None:
            return (None, None, None, None, None, None, None)
        return (
            remote_link.uid,
            remote_link.etag,
            remote_link.href,
            remote_link.address_book,
            _iso(remote_link.last_synced_at),
            remote_link.connection_id,
            _iso(remote_link.last_force_push_at),
        )

    def list(self, include_inactive: bool = True) -> list[LocalContact]:
        """
        List all contacts.

        Args:
            include_inactive: If False, archived and deleted contacts are
                left out

        Returns:
            Contacts ordered by creation time
        """
        query = f"SELECT {CONTACT_COLUMNS} FROM contacts"  # nosec B608
        if not include_inactive:
            query += " WHERE is_archived = 0 AND is_deleted = 0"
        query += " ORDER BY created_at, contact_id"

        with self.connection() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_contact(row) for row in rows]

    def get(self, contact_id: str) -> Optional[LocalContact]:
        """Get a contact by its local id, or None."""
        with self.connection() as conn:
            row = conn.execute(
                f"SELECT {CONTACT_COLUMNS} FROM contacts "  # nosec B608
                "WHERE contact_id = ?",
                (contact_id,),
            ).fetchone()
        return self._row_to_contact(row) if row else None

    def find_by_uid(self, uid: str) -> Optional[LocalContact]:
        """
        Find a contact by vCard UID.

        When several records share a UID, a SHARED record wins so that
        callers always see the collision instead of overwriting it.

        Args:
            uid: vCard UID

        Returns:
            The matching contact, or None
        """
        if not uid:
            return None

        with self.connection() as conn:
            row = conn.execute(
                f"SELECT {CONTACT_COLUMNS} FROM contacts "  # nosec B608
                "WHERE uid = ? "
                "ORDER BY CASE ownership WHEN 'shared' THEN 0 ELSE 1 END, "
                "created_at LIMIT 1",
                (uid,),
            ).fetchone()
        return self._row_to_contact(row) if row else None

    def create(
        self,
        vcard_text: str,
        ownership: Ownership = Ownership.OWNED,
        remote_link: Optional[RemoteLink] = None,
        display_name: Optional[str] = None,
        contact_id: Optional[str] = None,
        last_modified_at: Optional[datetime] = None,
        is_archived: bool = False,
        is_deleted: bool = False,
    ) -> LocalContact:
        """
        Create a new contact.

        Args:
            vcard_text: Raw vCard text
            ownership: Ownership of the new record
            remote_link: Link to the server copy, if already synced
            display_name: Display name, read from FN when omitted
            contact_id: Explicit id, generated when omitted
            last_modified_at: Modification time, now when omitted
            is_archived: Initial archived flag
            is_deleted: Initial soft-delete flag

        Returns:
            The stored contact
        """
        now = utc_now()
        contact = LocalContact(
            contact_id=contact_id or uuid.uuid4().hex,
            vcard_text=vcard_text,
            ownership=ownership,
            display_name=display_name or extract_display_name(vcard_text),
            remote_link=remote_link,
            is_archived=is_archived,
            is_deleted=is_deleted,
            created_at=now,
            last_modified_at=last_modified_at or now,
        )

        with self.connection() as conn:
            conn.execute(
                f"INSERT INTO contacts ({CONTACT_COLUMNS}) "  # nosec B608
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    contact.contact_id,
                    contact.uid,
                    contact.vcard_text,
                    contact.ownership.value,
                    contact.display_name,
                    int(contact.is_archived),
                    int(contact.is_deleted),
                    _iso(contact.created_at),
                    _iso(contact.last_modified_at),
                    *self._remote_params(remote_link),
                ),
            )

        logger.debug(f"Created contact {contact.contact_id} ({contact})")
        self._notify(CHANGE_CREATED, contact.contact_id)
        return contact

    def update(self, contact: LocalContact, touch: bool = True) -> LocalContact:
        """
        Write all fields of an existing contact.

        Args:
            contact: The contact to write
            touch: If True, last_modified_at is set to now. If False, the
                contact's own last_modified_at is stored unchanged.

        Returns:
            The stored contact

        Raises:
            StoreError: If the contact does not exist
        """
        if touch:
            contact.last_modified_at = utc_now()
        if not contact.display_name:
            contact.display_name = extract_display_name(contact.vcard_text)

        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE contacts SET
                    uid = ?, vcard_text = ?, ownership = ?, display_name = ?,
                    is_archived = ?, is_deleted = ?, last_modified_at = ?,
                    remote_uid = ?, remote_etag = ?, remote_href = ?,
                    remote_address_book = ?, remote_last_synced_at = ?,
                    remote_connection_id = ?, remote_last_force_push_at = ?
                WHERE contact_id = ?
                """,
                (
                    contact.uid,
                    contact.vcard_text,
                    contact.ownership.value,
                    contact.display_name,
                    int(contact.is_archived),
                    int(contact.is_deleted),
                    _iso(contact.last_modified_at),
                    *self._remote_params(contact.remote_link),
                    contact.contact_id,
                ),
            )
            if cursor.rowcount == 0:
                raise StoreError(f"Contact not found: {contact.contact_id}")

        self._notify(CHANGE_UPDATED, contact.contact_id)
        return contact

    def update_remote_link(
        self, contact_id: str, remote_link: Optional[RemoteLink]
    ) -> None:
        """
        Replace only the remote link of a contact.

        Does not touch last_modified_at or the vCard text.

        Raises:
            StoreError: If the contact does not exist
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE contacts SET
                    uid = COALESCE(uid, ?),
                    remote_uid = ?, remote_etag = ?, remote_href = ?,
                    remote_address_book = ?, remote_last_synced_at = ?,
                    remote_connection_id = ?, remote_last_force_push_at = ?
                WHERE contact_id = ?
                """,
                (
                    remote_link.uid if remote_link else None,
                    *self._remote_params(remote_link),
                    contact_id,
                ),
            )
            if cursor.rowcount == 0:
                raise StoreError(f"Contact not found: {contact_id}")

        self._notify(CHANGE_UPDATED, contact_id)

    def delete(self, contact_id: str) -> bool:
        """
        Delete a contact.

        Returns:
            True if a contact was deleted, False if not found
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM contacts WHERE contact_id = ?", (contact_id,)
            )
            deleted = cursor.rowcount > 0

        if deleted:
            self._notify(CHANGE_DELETED, contact_id)
        return deleted

    def count(self) -> int:
        with self.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM contacts").fetchone()[0]

    # =========================================================================
    # Sync State Operations
    # =========================================================================

    def get_sync_state(self, connection_id: str) -> Optional[dict[str, Any]]:
        """
        Get sync bookkeeping for a connection.

        Returns:
            Dictionary with last_pull_at, last_push_at (datetimes) and
            last_result (dict), or None if never synced
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT last_pull_at, last_push_at, last_result "
                "FROM sync_state WHERE connection_id = ?",
                (connection_id,),
            ).fetchone()

        if not row:
            return None
        return {
            "last_pull_at": parse_timestamp(row["last_pull_at"]),
            "last_push_at": parse_timestamp(row["last_push_at"]),
            "last_result": json.loads(row["last_result"]) if row["last_result"] else None,
        }

    def update_sync_state(
        self,
        connection_id: str,
        last_pull_at: Optional[datetime] = None,
        last_push_at: Optional[datetime] = None,
        last_result: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Update or insert sync bookkeeping for a connection.

        Fields passed as None keep their stored value.
        """
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (
                    connection_id, last_pull_at, last_push_at, last_result
                )
                VALUES (?, ?, ?, ?)
                ON CONFLICT(connection_id) DO UPDATE SET
                    last_pull_at = COALESCE(excluded.last_pull_at, last_pull_at),
                    last_push_at = COALESCE(excluded.last_push_at, last_push_at),
                    last_result = COALESCE(excluded.last_result, last_result)
                """,
                (
                    connection_id,
                    _iso(last_pull_at),
                    _iso(last_push_at),
                    json.dumps(last_result) if last_result is not None else None,
                ),
            )
