"""
Shared-contact protection for servers without access control.

Shared contacts are read-only here, but a server without read-only address
books lets any device edit them. Two periodic corrections keep the server
copies in line with the local ones:
- Unauthorized-edit detection: compare stored and current etags of every
  shared contact and force-push the local copy on mismatch
- Ecosystem refresh: force-push every shared contact unconditionally

On servers that enforce read-only address books both are no-ops.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from carddav_sync.api.bridge_api import BridgeAPI, BridgeAPIError
from carddav_sync.storage.db import ContactStore
from carddav_sync.sync.classify import ActionKind, Direction, classify
from carddav_sync.sync.connection import Connection
from carddav_sync.sync.contact import LocalContact, Ownership, RemoteContact
from carddav_sync.sync.events import EventBus, UnauthorizedEditCorrected
from carddav_sync.sync.push import PushEngine
from carddav_sync.utils.logging import get_audit_logger

logger = logging.getLogger(__name__)
audit = get_audit_logger()


@dataclass
class ProtectionResult:
    """Outcome of a detection or refresh cycle."""

    connection_id: str
    strategy: str
    skipped: bool = False
    checked: int = 0
    corrected: int = 0
    refreshed: int = 0
    failed: int = 0
    corrected_contacts: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def summary(self) -> str:
        if self.skipped:
            return (
                f"Protection {self.connection_id}: not needed "
                f"({self.strategy})"
            )
        if self.error:
            return f"Protection {self.connection_id} failed: {self.error}"
        return (
            f"Protection {self.connection_id}: {self.checked} checked, "
            f"{self.corrected} corrected, {self.refreshed} refreshed, "
            f"{self.failed} failed"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "strategy": self.strategy,
            "success": self.success,
            "skipped": self.skipped,
            "checked": self.checked,
            "corrected": self.corrected,
            "refreshed": self.refreshed,
            "failed": self.failed,
            "corrected_contacts": list(self.corrected_contacts),
            "error": self.error,
        }


class SharedContactProtection:
    """
    Detects and overwrites unauthorized server edits of shared contacts.

    Usage:
        protection = SharedContactProtection(bridge, store, push_engine, bus)
        result = protection.detect_and_correct(connection)
        result = protection.refresh(connection)
    """

    def __init__(
        self,
        bridge: BridgeAPI,
        store: ContactStore,
        push_engine: PushEngine,
        events: Optional[EventBus] = None,
    ):
        self.bridge = bridge
        self.store = store
        self.push_engine = push_engine
        self.events = events or EventBus()

    def _shared_contacts(self) -> list[LocalContact]:
        return [c for c in self.store.list(include_inactive=False) if c.is_shared]

    def _new_result(self, connection: Connection) -> ProtectionResult:
        capabilities = connection.capabilities
        result = ProtectionResult(
            connection_id=connection.connection_id,
            strategy=capabilities.protection_strategy.value,
        )
        if not capabilities.needs_client_protection:
            result.skipped = True
            logger.debug(
                f"{connection.connection_id}: server enforces read-only "
                "address books, protection not needed"
            )
        return result

    def detect_and_correct(self, connection: Connection) -> ProtectionResult:
        """
        Force-push shared contacts whose server copy changed behind our back.

        Args:
            connection: Connection to check

        Returns:
            ProtectionResult; a failed fetch is reported in ``error``
        """
        result = self._new_result(connection)
        if result.skipped:
            return result

        connection_id = connection.connection_id
        shared = self._shared_contacts()
        if not shared:
            logger.debug(f"{connection_id}: no shared contacts to check")
            return result

        try:
            remote_contacts = self.bridge.fetch(
                connection_id,
                default_address_book=connection.fetch_default_address_book,
            )
        except BridgeAPIError as e:
            result.error = str(e)
            logger.error(f"Protection check for {connection_id} failed: {e}")
            return result

        remote_by_uid = self._index_remote(connection, remote_contacts)

        for contact in shared:
            result.checked += 1
            remote = remote_by_uid.get(contact.uid or "")
            if remote is None:
                logger.debug(f"Shared contact {contact} not on server")
                continue

            action = classify(
                contact, remote, connection.capabilities, Direction.PULL
            )
            if action.kind is not ActionKind.PROTECT:
                continue

            logger.warning(
                f"Unauthorized edit of shared contact {contact}: "
                f"stored etag {contact.etag}, server etag {remote.etag}"
            )
            push = self.push_engine.force_push(contact, connection)
            if not push.success:
                result.failed += 1
                continue

            result.corrected += 1
            result.corrected_contacts.append(contact.display_name)
            audit.warning(
                f"[{connection_id}] overwrote unauthorized edit of shared "
                f"contact id={contact.contact_id} uid={push.uid}"
            )
            self.events.publish(
                UnauthorizedEditCorrected(
                    connection_id,
                    contact_id=contact.contact_id,
                    display_name=contact.display_name,
                    uid=push.uid or "",
                )
            )

        logger.info(result.summary())
        return result

    @staticmethod
    def _index_remote(
        connection: Connection, remote_contacts: list[RemoteContact]
    ) -> dict[str, RemoteContact]:
        """UID index preferring the copy in the shared routing target."""
        shared_book = connection.capabilities.route(Ownership.SHARED)
        index: dict[str, RemoteContact] = {}
        for remote in remote_contacts:
            if not remote.uid:
                continue
            current = index.get(remote.uid)
            if current is None or (
                remote.address_book == shared_book
                and current.address_book != remote.address_book
            ):
                index[remote.uid] = remote
        return index

    def refresh(self, connection: Connection) -> ProtectionResult:
        """
        Force-push every shared contact.

        Counters servers or devices that overwrite or garbage-collect
        contacts they do not know are managed elsewhere.
        """
        result = self._new_result(connection)
        if result.skipped:
            return result

        for contact in self._shared_contacts():
            push = self.push_engine.force_push(contact, connection)
            if push.success:
                result.refreshed += 1
            else:
                result.failed += 1

        if result.refreshed:
            audit.info(
                f"[{connection.connection_id}] refreshed {result.refreshed} "
                "shared contacts"
            )
        logger.info(result.summary())
        return result
