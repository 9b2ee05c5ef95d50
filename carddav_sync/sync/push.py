"""
Push engine: local store to server.

Routes local contacts to the right address book, skips records unchanged
since their last sync, makes sure every pushed vCard carries a stable UID,
and pushes batches with bounded parallelism.

Only the network calls run in parallel. Classification, UID assignment and
every store write happen on the calling thread.
"""

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from carddav_sync.api.bridge_api import (
    BridgeAPI,
    BridgeAPIError,
    ConflictError,
    PushReceipt,
    ServerUnavailableError,
    TransportError,
)
from carddav_sync.storage.db import ContactStore, StoreError
from carddav_sync.sync.classify import (
    DEFAULT_POLICY,
    Action,
    ActionKind,
    ChangeSkipPolicy,
    Direction,
    classify,
)
from carddav_sync.sync.connection import Connection
from carddav_sync.sync.contact import LocalContact, Ownership, RemoteLink, utc_now
from carddav_sync.utils.vcard import extract_uid, generate_uid, with_uid

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10

# Failures meaning the connection is down, not that one contact is bad
CONNECTION_ERRORS = (TransportError, ServerUnavailableError)


class PushStatus(Enum):
    PUSHED = "pushed"
    SKIPPED = "skipped"
    FAILED = "failed"


def error_type_for(error: Exception) -> str:
    """Short error category used in results and summaries."""
    if isinstance(error, ConflictError):
        return "conflict"
    if isinstance(error, ServerUnavailableError):
        return "server_unavailable"
    if isinstance(error, TransportError):
        return "transport"
    if isinstance(error, BridgeAPIError):
        return "bridge"
    if isinstance(error, (StoreError, sqlite3.Error)):
        return "store"
    return "invalid_vcard"


@dataclass
class PushResult:
    """
    Outcome of pushing one contact.

    Attributes:
        contact_id: Local id of the contact
        display_name: Name for summaries
        status: PUSHED, SKIPPED or FAILED
        reason: Classification reason or failure message
        address_book: Routing target
        uid: UID sent to the server
        etag: New server etag, when pushed
        href: New server href, when pushed
        error_type: Failure category, see error_type_for()
    """

    contact_id: str
    display_name: str
    status: PushStatus
    reason: str = ""
    address_book: Optional[str] = None
    uid: Optional[str] = None
    etag: Optional[str] = None
    href: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is not PushStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "display_name": self.display_name,
            "status": self.status.value,
            "reason": self.reason,
            "address_book": self.address_book,
            "uid": self.uid,
            "etag": self.etag,
            "href": self.href,
            "error_type": self.error_type,
        }


@dataclass
class BatchResult:
    """
    Aggregated outcome of a batch push.

    ``aborted`` is set when a whole group failed with transport or
    server-unavailable errors: the remaining contacts were not tried.
    """

    connection_id: str
    total: int = 0
    pushed: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: int = 0
    aborted: bool = False
    error: Optional[str] = None
    errors: list[dict[str, Any]] = field(default_factory=list)
    results: list[PushResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.aborted and self.error is None

    @property
    def not_attempted(self) -> int:
        return self.total - self.pushed - self.skipped - self.failed

    def add(self, result: PushResult) -> None:
        self.results.append(result)
        if result.status is PushStatus.PUSHED:
            self.pushed += 1
        elif result.status is PushStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            if result.error_type == "conflict":
                self.conflicts += 1
            self.errors.append(
                {
                    "contact_id": result.contact_id,
                    "name": result.display_name,
                    "error_type": result.error_type,
                    "error": result.reason,
                }
            )

    def summary(self) -> str:
        """Generate a human-readable summary of the batch."""
        if self.error and not self.total:
            return f"Push {self.connection_id} failed: {self.error}"

        lines = [
            f"Push Summary ({self.connection_id}):",
            f"  Eligible: {self.total}",
            f"  Pushed: {self.pushed}",
            f"  Skipped (unchanged): {self.skipped}",
            f"  Failed: {self.failed}",
        ]
        if self.conflicts:
            lines.append(f"  Conflicts (retried next push): {self.conflicts}")
        if self.aborted:
            lines.append(
                f"  ABORTED: {self.error} ({self.not_attempted} not attempted)"
            )
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "success": self.success,
            "total": self.total,
            "pushed": self.pushed,
            "skipped": self.skipped,
            "failed": self.failed,
            "conflicts": self.conflicts,
            "aborted": self.aborted,
            "error": self.error,
            "errors": list(self.errors),
        }


@dataclass
class _PreparedPush:
    """A contact that passed classification and carries its UID."""

    contact: LocalContact
    uid: str
    vcard_text: str
    action: Action
    force: bool = False

    @property
    def address_book(self) -> str:
        return self.action.address_book or ""


class PushEngine:
    """
    Pushes local contacts to the server through the bridge.

    Usage:
        engine = PushEngine(bridge, store)
        result = engine.push_one(contact, connection)
        batch = engine.push_all(connection)
    """

    def __init__(
        self,
        bridge: BridgeAPI,
        store: ContactStore,
        policy: ChangeSkipPolicy = DEFAULT_POLICY,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        """
        Initialize the push engine.

        Args:
            bridge: Bridge client
            store: Local contact store
            policy: Change-skip policy for unchanged records
            concurrency: Default group size for batch pushes
        """
        self.bridge = bridge
        self.store = store
        self.policy = policy
        self.concurrency = max(1, concurrency)

    # =========================================================================
    # Single contact
    # =========================================================================

    def push_one(self, contact: LocalContact, connection: Connection) -> PushResult:
        """
        Push one contact.

        Args:
            contact: The contact to push
            connection: Target connection

        Returns:
            PushResult; failures are reported, not raised
        """
        return self._push(contact, connection, force=False)

    def force_push(self, contact: LocalContact, connection: Connection) -> PushResult:
        """
        Overwrite the server copy of a contact regardless of remote changes.

        Used by shared-contact protection. Unlike a normal push, the remote
        link is recorded even for SHARED contacts, stamped with the
        force-push time, so later protection checks compare against the
        etag this push produced.
        """
        return self._push(contact, connection, force=True)

    def _push(
        self, contact: LocalContact, connection: Connection, force: bool
    ) -> PushResult:
        prepared = self._prepare(contact, connection, force=force)
        if isinstance(prepared, PushResult):
            return prepared

        try:
            receipt = self._send(prepared, connection.connection_id)
        except BridgeAPIError as e:
            return self._failure(prepared, e)

        return self._record(prepared, connection.connection_id, receipt)

    def _prepare(
        self, contact: LocalContact, connection: Connection, force: bool = False
    ) -> Union[_PreparedPush, PushResult]:
        """Classify and assign a UID. Returns a PushResult when not sending."""
        capabilities = connection.capabilities

        if force:
            address_book = capabilities.route_contact(contact)
            if not contact.is_syncable:
                action = Action(ActionKind.SKIP, "inactive", address_book)
            else:
                action = Action(ActionKind.UPDATE, "force_override", address_book)
        else:
            action = classify(
                contact, None, capabilities, Direction.PUSH, self.policy
            )

        if action.is_skip:
            logger.debug(f"Skipping push of {contact}: {action.reason}")
            return PushResult(
                contact_id=contact.contact_id,
                display_name=contact.display_name,
                status=PushStatus.SKIPPED,
                reason=action.reason,
                address_book=action.address_book,
                uid=contact.uid,
            )

        try:
            uid, vcard_text = self._ensure_uid(contact)
        except (ValueError, StoreError, sqlite3.Error) as e:
            logger.error(f"Cannot push {contact}: {e}")
            return PushResult(
                contact_id=contact.contact_id,
                display_name=contact.display_name,
                status=PushStatus.FAILED,
                reason=str(e),
                address_book=action.address_book,
                error_type=error_type_for(e),
            )

        return _PreparedPush(contact, uid, vcard_text, action, force)

    def _ensure_uid(self, contact: LocalContact) -> tuple[str, str]:
        """
        Return the UID and vCard text to send.

        A vCard without a UID line gets one: the linked UID if the record
        was synced before, the local id for SHARED contacts (so every share
        of a contact resolves to one remote identity), or a fresh UID.
        Only non-SHARED records are written back to the store.
        """
        uid = extract_uid(contact.vcard_text)
        if uid:
            return uid, contact.vcard_text

        if contact.remote_link and contact.remote_link.uid:
            uid = contact.remote_link.uid
        elif contact.ownership is Ownership.SHARED:
            uid = contact.contact_id
        else:
            uid = generate_uid()

        vcard_text = with_uid(contact.vcard_text, uid)

        if contact.ownership is Ownership.SHARED:
            logger.debug(f"Shared contact {contact} pushed with UID {uid}")
        else:
            contact.vcard_text = vcard_text
            self.store.update(contact, touch=False)
            logger.info(f"Assigned UID {uid} to {contact}")

        return uid, vcard_text

    def _send(self, prepared: _PreparedPush, connection_id: str) -> PushReceipt:
        # The bridge looks up the current server version itself
        return self.bridge.push(
            connection_id,
            prepared.uid,
            prepared.vcard_text,
            prepared.address_book,
            etag=None,
            force_override=prepared.force,
        )

    def _record(
        self, prepared: _PreparedPush, connection_id: str, receipt: PushReceipt
    ) -> PushResult:
        contact = prepared.contact
        result = PushResult(
            contact_id=contact.contact_id,
            display_name=contact.display_name,
            status=PushStatus.PUSHED,
            reason=prepared.action.reason,
            address_book=prepared.address_book,
            uid=prepared.uid,
            etag=receipt.etag,
            href=receipt.href,
        )

        if contact.ownership is Ownership.SHARED and not prepared.force:
            logger.debug(f"Pushed shared contact {contact}, local record untouched")
            return result

        if not receipt.etag:
            logger.warning(f"Push of {contact} returned no etag, link not updated")
            return result

        now = utc_now()
        previous = contact.remote_link
        last_force_push_at = previous.last_force_push_at if previous else None
        if prepared.force:
            last_force_push_at = now

        link = RemoteLink(
            uid=prepared.uid,
            etag=receipt.etag,
            href=receipt.href,
            address_book=prepared.address_book,
            last_synced_at=now,
            connection_id=connection_id,
            last_force_push_at=last_force_push_at,
        )

        try:
            self.store.update_remote_link(contact.contact_id, link)
        except (StoreError, sqlite3.Error) as e:
            logger.error(f"Pushed {contact} but could not record link: {e}")
            result.status = PushStatus.FAILED
            result.reason = str(e)
            result.error_type = error_type_for(e)
            return result

        contact.remote_link = link
        logger.debug(f"Pushed {contact} to {prepared.address_book}")
        return result

    @staticmethod
    def _failure(prepared: _PreparedPush, error: Exception) -> PushResult:
        contact = prepared.contact
        error_type = error_type_for(error)
        if error_type == "conflict":
            logger.warning(f"Version conflict pushing {contact}, retrying next push")
        else:
            logger.error(f"Failed to push {contact}: {error}")

        return PushResult(
            contact_id=contact.contact_id,
            display_name=contact.display_name,
            status=PushStatus.FAILED,
            reason=str(error),
            address_book=prepared.address_book,
            uid=prepared.uid,
            error_type=error_type,
        )

    # =========================================================================
    # Batches
    # =========================================================================

    def push_batch(
        self,
        contacts: list[LocalContact],
        connection: Connection,
        concurrency: Optional[int] = None,
    ) -> BatchResult:
        """
        Push many contacts in fixed-size groups.

        Archived and deleted contacts are not eligible. Each group's
        network calls run in parallel; results are recorded in input order.

        Args:
            contacts: Candidate contacts
            connection: Target connection
            concurrency: Group size and parallelism (default: engine setting)

        Returns:
            BatchResult with per-contact results and error details
        """
        size = max(1, concurrency or self.concurrency)
        connection_id = connection.connection_id
        eligible = [c for c in contacts if c.is_syncable]
        batch = BatchResult(connection_id=connection_id, total=len(eligible))

        logger.info(
            f"Pushing {len(eligible)} contacts to {connection_id} "
            f"in groups of {size}"
        )

        for start in range(0, len(eligible), size):
            group = eligible[start : start + size]

            prepared: list[_PreparedPush] = []
            for contact in group:
                outcome = self._prepare(contact, connection)
                if isinstance(outcome, PushResult):
                    batch.add(outcome)
                else:
                    prepared.append(outcome)

            if not prepared:
                continue

            sent = self._send_group(prepared, connection_id, size)

            connection_failures: list[BridgeAPIError] = []
            for item, outcome in sent:
                if isinstance(outcome, BridgeAPIError):
                    if isinstance(outcome, CONNECTION_ERRORS):
                        connection_failures.append(outcome)
                    batch.add(self._failure(item, outcome))
                else:
                    batch.add(self._record(item, connection_id, outcome))

            if len(connection_failures) == len(sent):
                unavailable = [
                    e
                    for e in connection_failures
                    if isinstance(e, ServerUnavailableError)
                ]
                batch.aborted = True
                batch.error = (
                    f"server unavailable: {unavailable[0]}"
                    if unavailable
                    else "bridge unreachable"
                )
                logger.error(
                    f"Push {connection_id} aborted: every push in the group "
                    f"failed at the connection level ({batch.error})"
                )
                break

        logger.info(
            f"Push {connection_id}: {batch.pushed} pushed, "
            f"{batch.skipped} skipped, {batch.failed} failed"
        )
        return batch

    def _send_group(
        self, prepared: list[_PreparedPush], connection_id: str, size: int
    ) -> list[tuple[_PreparedPush, Union[PushReceipt, BridgeAPIError]]]:
        outcomes: list[tuple[_PreparedPush, Union[PushReceipt, BridgeAPIError]]] = []
        workers = min(size, len(prepared))

        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"push-{connection_id}"
        ) as executor:
            futures = [
                (item, executor.submit(self._send, item, connection_id))
                for item in prepared
            ]
            for item, future in futures:
                try:
                    outcomes.append((item, future.result()))
                except BridgeAPIError as e:
                    outcomes.append((item, e))

        return outcomes

    def push_all(self, connection: Connection) -> BatchResult:
        """
        Push every eligible local contact of the store.

        Raises:
            StoreError: If the store cannot be listed
        """
        contacts = self.store.list(include_inactive=False)
        return self.push_batch(contacts, connection)
