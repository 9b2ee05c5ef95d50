"""
Pull reconciliation: server to local store.

Fetches the full remote enumeration of a connection and reconciles it into
the local store:
- Imports new remote contacts as IMPORTED records
- Updates changed records while preserving ownership and lifecycle flags
- Deletes orphaned copies of shared contacts from the server
- Applies server-side deletions to IMPORTED records only

A server that reports itself unavailable, or an empty enumeration while
imported records exist, never leads to local deletions.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from carddav_sync.api.bridge_api import (
    BridgeAPI,
    BridgeAPIError,
    ServerUnavailableError,
)
from carddav_sync.storage.db import ContactStore, StoreError
from carddav_sync.sync.classify import ActionKind, Direction, classify
from carddav_sync.sync.connection import Connection
from carddav_sync.sync.contact import (
    LocalContact,
    Ownership,
    RemoteContact,
    RemoteLink,
    utc_now,
)
from carddav_sync.utils.logging import get_audit_logger

logger = logging.getLogger(__name__)
audit = get_audit_logger()

# Per-contact failures that are collected instead of aborting the pull
CONTACT_ERRORS = (BridgeAPIError, StoreError, sqlite3.Error, ValueError)


class AbortReason(Enum):
    """Why a pull refused to apply changes."""

    SERVER_UNAVAILABLE = "server_unavailable"
    EMPTY_RESPONSE = "empty_response"


@dataclass
class PullResult:
    """
    Outcome of one pull cycle.

    ``success`` is False when nothing could be reconciled (server
    unavailable, bridge unreachable). An empty-response safety abort keeps
    ``success`` True with ``safety_abort`` set, since imports still ran and
    only deletion was refused.
    """

    connection_id: str
    success: bool = True
    safety_abort: Optional[AbortReason] = None
    error: Optional[str] = None

    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    orphans_deleted: int = 0
    protected: int = 0  # Shared etag mismatches left to the protection cycle
    server_deletions_applied: int = 0
    server_deletions_skipped: int = 0

    deleted_contacts: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def has_changes(self) -> bool:
        return bool(
            self.created
            or self.updated
            or self.orphans_deleted
            or self.server_deletions_applied
        )

    def add_error(
        self, message: str, uid: Optional[str] = None, name: Optional[str] = None
    ) -> None:
        self.failed += 1
        self.errors.append({"uid": uid, "name": name, "error": message})

    def summary(self) -> str:
        """Generate a human-readable summary of the pull."""
        if not self.success:
            reason = (
                f" ({self.safety_abort.value})" if self.safety_abort else ""
            )
            return f"Pull {self.connection_id} failed{reason}: {self.error}"

        lines = [
            f"Pull Summary ({self.connection_id}):",
            f"  Fetched: {self.fetched}",
            f"  Imported: {self.created}",
            f"  Updated: {self.updated}",
            f"  Skipped (unchanged): {self.skipped}",
            f"  Failed: {self.failed}",
        ]
        if self.orphans_deleted:
            lines.append(f"  Orphans deleted on server: {self.orphans_deleted}")
        if self.protected:
            lines.append(f"  Shared contacts edited on server: {self.protected}")
        lines.append(
            f"  Server deletions: {self.server_deletions_applied} applied, "
            f"{self.server_deletions_skipped} kept"
        )
        if self.safety_abort:
            lines.append(
                f"  SAFETY ABORT ({self.safety_abort.value}): "
                "no local deletions were made"
            )
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "success": self.success,
            "safety_abort": self.safety_abort.value if self.safety_abort else None,
            "error": self.error,
            "fetched": self.fetched,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "orphans_deleted": self.orphans_deleted,
            "protected": self.protected,
            "server_deletions_applied": self.server_deletions_applied,
            "server_deletions_skipped": self.server_deletions_skipped,
            "deleted_contacts": list(self.deleted_contacts),
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class PullReconciler:
    """
    Reconciles the remote enumeration of a connection into the local store.

    Usage:
        reconciler = PullReconciler(bridge, store)
        result = reconciler.pull(connection)
        if result.safety_abort:
            ...
    """

    def __init__(self, bridge: BridgeAPI, store: ContactStore):
        self.bridge = bridge
        self.store = store

    def pull(self, connection: Connection) -> PullResult:
        """
        Run one pull cycle.

        Args:
            connection: The connection to pull from

        Returns:
            PullResult with exact counts
        """
        connection_id = connection.connection_id
        result = PullResult(connection_id=connection_id, started_at=utc_now())

        try:
            remote_contacts = self.bridge.fetch(
                connection_id,
                default_address_book=connection.fetch_default_address_book,
            )
        except ServerUnavailableError as e:
            result.success = False
            result.safety_abort = AbortReason.SERVER_UNAVAILABLE
            result.error = str(e)
            result.finished_at = utc_now()
            logger.error(
                f"Pull {connection_id} aborted, server unavailable: {e}. "
                "No contacts were imported or deleted."
            )
            audit.error(f"[{connection_id}] safety abort: server unavailable ({e})")
            return result
        except BridgeAPIError as e:
            result.success = False
            result.error = str(e)
            result.finished_at = utc_now()
            logger.error(f"Pull {connection_id} failed: {e}")
            return result

        result.fetched = len(remote_contacts)

        self._import(connection, remote_contacts, result)
        self._apply_server_deletions(connection, remote_contacts, result)

        result.finished_at = utc_now()
        logger.info(
            f"Pull {connection_id}: {result.created} imported, "
            f"{result.updated} updated, {result.skipped} skipped, "
            f"{result.failed} failed, {result.orphans_deleted} orphans deleted, "
            f"{result.server_deletions_applied} server deletions applied"
        )
        return result

    # =========================================================================
    # Import
    # =========================================================================

    def _import(
        self,
        connection: Connection,
        remote_contacts: list[RemoteContact],
        result: PullResult,
    ) -> None:
        connection_id = connection.connection_id
        capabilities = connection.capabilities
        deleted_orphans: set[tuple[str, Optional[str], str]] = set()

        for remote in remote_contacts:
            if not remote.uid:
                logger.warning(
                    f"Remote contact without UID skipped: {remote.display_name!r}"
                )
                result.add_error("missing UID", name=remote.display_name)
                continue

            key = (remote.uid, remote.href, remote.address_book)
            if key in deleted_orphans:
                logger.debug(f"Orphan {remote} already deleted this cycle")
                result.skipped += 1
                continue

            try:
                local = self.store.find_by_uid(remote.uid)
                action = classify(local, remote, capabilities, Direction.PULL)

                if action.kind is ActionKind.SKIP:
                    result.skipped += 1

                elif action.kind is ActionKind.CREATE:
                    self._create_local(connection_id, remote)
                    result.created += 1

                elif action.kind is ActionKind.UPDATE and local is not None:
                    self._update_local(connection_id, local, remote)
                    result.updated += 1

                elif action.kind is ActionKind.DELETE_REMOTE:
                    self.bridge.delete(
                        connection_id, remote.uid, remote.href, remote.address_book
                    )
                    deleted_orphans.add(key)
                    result.orphans_deleted += 1
                    logger.warning(
                        f"Deleted orphaned copy of shared contact {remote} "
                        f"from {remote.address_book} ({action.reason})"
                    )
                    audit.warning(
                        f"[{connection_id}] deleted remote orphan uid={remote.uid} "
                        f"href={remote.href} book={remote.address_book} "
                        f"reason={action.reason}"
                    )

                elif action.kind is ActionKind.PROTECT:
                    result.protected += 1
                    logger.info(
                        f"Shared contact {remote} was edited on the server, "
                        "leaving it to the protection cycle"
                    )

            except CONTACT_ERRORS as e:
                logger.error(f"Failed to reconcile {remote}: {e}")
                result.add_error(str(e), uid=remote.uid, name=remote.display_name)

    def _create_local(self, connection_id: str, remote: RemoteContact) -> None:
        now = utc_now()
        self.store.create(
            remote.vcard_text,
            ownership=Ownership.IMPORTED,
            remote_link=self._link_for(connection_id, remote, now),
            display_name=remote.display_name,
            last_modified_at=now,
        )
        logger.debug(f"Imported {remote}")

    def _update_local(
        self, connection_id: str, local: LocalContact, remote: RemoteContact
    ) -> None:
        """Overwrite content and remote link only; ownership and flags stay."""
        now = utc_now()
        link = self._link_for(connection_id, remote, now)
        if local.remote_link is not None:
            link.last_force_push_at = local.remote_link.last_force_push_at

        local.vcard_text = remote.vcard_text
        local.display_name = remote.display_name
        local.remote_link = link
        # Same instant as last_synced_at so the next push sees it unchanged
        local.last_modified_at = now
        self.store.update(local, touch=False)
        logger.debug(f"Updated {local} from server")

    @staticmethod
    def _link_for(
        connection_id: str, remote: RemoteContact, synced_at: datetime
    ) -> RemoteLink:
        return RemoteLink(
            uid=remote.uid or "",
            etag=remote.etag,
            href=remote.href,
            address_book=remote.address_book,
            last_synced_at=synced_at,
            connection_id=connection_id,
        )

    # =========================================================================
    # Server-side deletion detection
    # =========================================================================

    def _apply_server_deletions(
        self,
        connection: Connection,
        remote_contacts: list[RemoteContact],
        result: PullResult,
    ) -> None:
        connection_id = connection.connection_id
        remote_uids = {remote.uid for remote in remote_contacts if remote.uid}

        try:
            local_contacts = self.store.list()
        except (StoreError, sqlite3.Error) as e:
            logger.error(f"Could not list local contacts for deletion check: {e}")
            result.add_error(f"deletion check skipped: {e}")
            return

        if not remote_uids and any(
            c.ownership is Ownership.IMPORTED for c in local_contacts
        ):
            result.safety_abort = AbortReason.EMPTY_RESPONSE
            logger.error(
                f"Pull {connection_id}: server returned no contacts while "
                "imported contacts exist locally. Refusing to delete anything."
            )
            audit.error(
                f"[{connection_id}] safety abort: empty response with local imports"
            )
            return

        candidates = [
            c
            for c in local_contacts
            if c.remote_link is not None
            and c.remote_link.connection_id in (None, connection_id)
            and c.ownership is not Ownership.SHARED
            and c.is_syncable
        ]

        for contact in candidates:
            uid = contact.uid
            if not uid or uid in remote_uids:
                continue

            action = classify(
                contact, None, connection.capabilities, Direction.PULL
            )
            if action.kind is not ActionKind.DELETE_LOCAL:
                result.server_deletions_skipped += 1
                logger.debug(f"Kept {contact} missing on server ({action.reason})")
                continue

            try:
                if self.store.delete(contact.contact_id):
                    result.server_deletions_applied += 1
                    result.deleted_contacts.append(contact.display_name or uid)
                    logger.info(f"Deleted {contact}: removed on server")
                    audit.info(
                        f"[{connection_id}] deleted local contact "
                        f"id={contact.contact_id} uid={uid}: removed on server"
                    )
            except (StoreError, sqlite3.Error) as e:
                logger.error(f"Failed to delete {contact}: {e}")
                result.add_error(str(e), uid=uid, name=contact.display_name)
