"""
Ownership rules for reconciliation, defined once.

``classify()`` decides what to do with a local contact given the remote
state and the connection's capabilities. Pull, push and shared-contact
protection all call it, so every ownership rule lives in this module.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from carddav_sync.sync.capabilities import ServerCapabilities
from carddav_sync.sync.contact import LocalContact, Ownership, RemoteContact


class Direction(Enum):
    """Which way a classification is made for."""

    PULL = "pull"
    PUSH = "push"


class ActionKind(Enum):
    """What reconciliation should do with one contact."""

    SKIP = "skip"
    CREATE = "create"
    UPDATE = "update"
    DELETE_LOCAL = "delete_local"
    DELETE_REMOTE = "delete_remote"
    PROTECT = "protect"


@dataclass(frozen=True)
class Action:
    """
    Result of classifying one contact.

    Attributes:
        kind: The action to take
        reason: Short machine-friendly explanation, used in logs and results
        address_book: Address book the action targets, when it has one
    """

    kind: ActionKind
    reason: str
    address_book: Optional[str] = None

    @property
    def is_skip(self) -> bool:
        return self.kind is ActionKind.SKIP


@dataclass(frozen=True)
class ChangeSkipPolicy:
    """
    Push-side "unchanged since last sync" check.

    ``last_synced_at`` is written by this client after a sync while
    ``last_modified_at`` is written by whatever edited the record, so the
    two may come from different clocks. ``clock_skew_margin`` (seconds) is
    added to the modification time before comparing: a positive margin
    pushes records edited shortly before the last sync instead of skipping
    them. ``enabled=False`` pushes every record.
    """

    enabled: bool = True
    clock_skew_margin: float = 0.0

    def is_unchanged(self, contact: LocalContact) -> bool:
        if not self.enabled:
            return False

        link = contact.remote_link
        if link is None or not link.etag or link.last_synced_at is None:
            return False

        if contact.last_modified_at is None:
            return True

        threshold = contact.last_modified_at + timedelta(
            seconds=self.clock_skew_margin
        )
        return link.last_synced_at >= threshold


DEFAULT_POLICY = ChangeSkipPolicy()


def classify(
    local: Optional[LocalContact],
    remote: Optional[RemoteContact],
    capabilities: ServerCapabilities,
    direction: Direction = Direction.PULL,
    policy: ChangeSkipPolicy = DEFAULT_POLICY,
) -> Action:
    """
    Classify a local/remote pair into a reconciliation action.

    Args:
        local: The local record matched by UID, or None
        remote: The remote record for the same UID, or None when the UID is
            absent from the server enumeration. Ignored for PUSH.
        capabilities: Capability record of the connection
        direction: PULL (import/deletion detection) or PUSH
        policy: Change-skip policy, PUSH only

    Returns:
        Action describing what to do

    Raises:
        ValueError: If both local and remote are None on a pull, or local is
            None on a push
    """
    if direction is Direction.PUSH:
        if local is None:
            raise ValueError("push classification requires a local contact")
        return _classify_push(local, capabilities, policy)

    if remote is None:
        if local is None:
            raise ValueError("pull classification requires a local or remote contact")
        return _classify_missing_remote(local)

    return _classify_pull(local, remote, capabilities)


def _classify_pull(
    local: Optional[LocalContact],
    remote: RemoteContact,
    capabilities: ServerCapabilities,
) -> Action:
    if local is None:
        return Action(ActionKind.CREATE, "new_remote", remote.address_book)

    if local.ownership is Ownership.SHARED:
        return _classify_shared(local, remote, capabilities)

    if local.etag and local.etag == remote.etag:
        return Action(ActionKind.SKIP, "etag_match", remote.address_book)

    return Action(ActionKind.UPDATE, "etag_changed", remote.address_book)


def _classify_shared(
    local: LocalContact,
    remote: RemoteContact,
    capabilities: ServerCapabilities,
) -> Action:
    """
    A remote record under a SHARED UID is either our own mirror of the
    shared contact or an orphan. It is our mirror only when it sits in the
    shared routing target and, once linked, at the linked href.
    """
    expected_book = capabilities.route(Ownership.SHARED)
    if remote.address_book != expected_book:
        return Action(ActionKind.DELETE_REMOTE, "orphaned_shared", remote.address_book)

    link = local.remote_link
    if link and link.href and remote.href and link.href != remote.href:
        return Action(
            ActionKind.DELETE_REMOTE, "shared_uid_collision", remote.address_book
        )

    if link and link.etag and remote.etag and link.etag != remote.etag:
        if capabilities.needs_client_protection:
            return Action(ActionKind.PROTECT, "unauthorized_edit", expected_book)
        return Action(ActionKind.SKIP, "shared_server_protected", expected_book)

    return Action(ActionKind.SKIP, "shared_mirror", expected_book)


def _classify_missing_remote(local: LocalContact) -> Action:
    if not local.is_syncable:
        return Action(ActionKind.SKIP, "inactive")

    if local.ownership is Ownership.SHARED:
        return Action(ActionKind.SKIP, "shared_managed_by_protection")

    if local.remote_link is None:
        return Action(ActionKind.SKIP, "never_synced")

    if local.ownership is Ownership.IMPORTED:
        return Action(
            ActionKind.DELETE_LOCAL,
            "deleted_on_server",
            local.remote_link.address_book,
        )

    return Action(ActionKind.SKIP, "owned_kept")


def _classify_push(
    local: LocalContact,
    capabilities: ServerCapabilities,
    policy: ChangeSkipPolicy,
) -> Action:
    address_book = capabilities.route_contact(local)

    if not local.is_syncable:
        return Action(ActionKind.SKIP, "inactive", address_book)

    if policy.is_unchanged(local):
        return Action(ActionKind.SKIP, "unchanged_since_sync", address_book)

    if local.remote_link is None:
        return Action(ActionKind.CREATE, "never_synced", address_book)

    return Action(ActionKind.UPDATE, "changed", address_book)
