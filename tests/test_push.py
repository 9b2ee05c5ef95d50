"""
Tests for the push engine.

Uses an in-memory ContactStore and a mocked bridge to check routing,
UID assignment, change skipping, shared-contact handling, force pushes
and batch grouping.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from carddav_sync.api.bridge_api import (
    BridgeAPI,
    ConflictError,
    PushReceipt,
    ServerUnavailableError,
    TransportError,
)
from carddav_sync.storage.db import ContactStore
from carddav_sync.sync.capabilities import detect_capabilities
from carddav_sync.sync.classify import ChangeSkipPolicy
from carddav_sync.sync.connection import Connection
from carddav_sync.sync.contact import Ownership, RemoteLink, utc_now
from carddav_sync.sync.push import (
    BatchResult,
    PushEngine,
    PushResult,
    PushStatus,
    error_type_for,
)
from carddav_sync.utils.vcard import extract_uid

ACL = detect_capabilities("https://dav.example.com/dav.php")
NO_ACL = detect_capabilities("https://contacts.icloud.com")


def vcard(name="Ada Lovelace", uid=None):
    uid_line = f"UID:{uid}\n" if uid else ""
    return f"BEGIN:VCARD\nVERSION:3.0\nFN:{name}\n{uid_line}END:VCARD"


def receipt_for(connection_id, uid, vcard_text, address_book, **kwargs):
    """Bridge push stand-in returning a receipt derived from the UID."""
    return PushReceipt(etag=f'"{uid}-v1"', href=f"/{address_book}/{uid}.vcf")


@pytest.fixture
def store():
    contact_store = ContactStore(":memory:")
    contact_store.initialize()
    yield contact_store
    contact_store.close()


@pytest.fixture
def bridge():
    mock_bridge = MagicMock(spec=BridgeAPI)
    mock_bridge.push.side_effect = receipt_for
    return mock_bridge


@pytest.fixture
def connection():
    return Connection("work", "https://dav.example.com/dav.php", "ada", ACL)


@pytest.fixture
def engine(bridge, store):
    return PushEngine(bridge, store)


class TestPushOne:
    """Tests for pushing a single contact."""

    def test_owned_contact_goes_to_read_write_book(
        self, engine, bridge, store, connection
    ):
        """OWNED contacts are routed to the read-write book and linked."""
        contact = store.create(vcard(uid="u1"))

        result = engine.push_one(contact, connection)

        assert result.status is PushStatus.PUSHED
        assert result.address_book == "my-contacts"
        bridge.push.assert_called_once_with(
            "work",
            "u1",
            contact.vcard_text,
            "my-contacts",
            etag=None,
            force_override=False,
        )
        stored = store.get(contact.contact_id)
        assert stored.remote_link.etag == '"u1-v1"'
        assert stored.remote_link.href == "/my-contacts/u1.vcf"
        assert stored.remote_link.connection_id == "work"
        assert stored.remote_link.last_force_push_at is None

    def test_pushed_contact_is_skipped_next_time(self, engine, bridge, store, connection):
        """A contact unchanged since its push is not sent again."""
        contact = store.create(vcard(uid="u1"))
        engine.push_one(contact, connection)

        result = engine.push_one(store.get(contact.contact_id), connection)

        assert result.status is PushStatus.SKIPPED
        assert result.reason == "unchanged_since_sync"
        assert bridge.push.call_count == 1

    def test_edited_contact_is_pushed_again(self, engine, bridge, store, connection):
        """A local edit after the last sync is pushed."""
        contact = store.create(vcard(uid="u1"))
        engine.push_one(contact, connection)
        edited = store.get(contact.contact_id)
        edited.last_modified_at = edited.remote_link.last_synced_at + timedelta(
            seconds=5
        )
        store.update(edited, touch=False)

        result = engine.push_one(store.get(contact.contact_id), connection)

        assert result.status is PushStatus.PUSHED
        assert result.reason == "changed"

    def test_disabled_policy_pushes_everything(self, bridge, store, connection):
        """With the change-skip policy disabled every record is sent."""
        engine = PushEngine(bridge, store, policy=ChangeSkipPolicy(enabled=False))
        contact = store.create(vcard(uid="u1"))
        engine.push_one(contact, connection)

        engine.push_one(store.get(contact.contact_id), connection)

        assert bridge.push.call_count == 2

    def test_missing_uid_is_generated_and_stored(
        self, engine, bridge, store, connection
    ):
        """An OWNED vCard without UID gets one that is written back."""
        contact = store.create(vcard())

        result = engine.push_one(contact, connection)

        assert result.uid.startswith("urn:uuid:")
        stored = store.get(contact.contact_id)
        assert extract_uid(stored.vcard_text) == result.uid
        assert bridge.push.call_args[0][1] == result.uid

    def test_linked_uid_is_reused(self, engine, bridge, store, connection):
        """A synced record without UID line reuses its linked UID."""
        contact = store.create(
            vcard(), Ownership.IMPORTED, remote_link=RemoteLink(uid="linked-uid")
        )

        result = engine.push_one(contact, connection)

        assert result.uid == "linked-uid"

    def test_invalid_vcard_fails(self, engine, bridge, store, connection):
        """A vCard that cannot take a UID is reported as invalid."""
        contact = store.create("BEGIN:VCARD\nFN:Broken\n")

        result = engine.push_one(contact, connection)

        assert result.status is PushStatus.FAILED
        assert result.error_type == "invalid_vcard"
        bridge.push.assert_not_called()

    def test_inactive_contact_is_skipped(self, engine, bridge, store, connection):
        """Archived contacts are not pushed."""
        contact = store.create(vcard(uid="u1"), is_archived=True)

        result = engine.push_one(contact, connection)

        assert result.status is PushStatus.SKIPPED
        assert result.reason == "inactive"

    def test_conflict_is_reported_not_raised(self, engine, bridge, store, connection):
        """Version conflicts fail the contact with error type conflict."""
        bridge.push.side_effect = ConflictError("etag mismatch")
        contact = store.create(vcard(uid="u1"))

        result = engine.push_one(contact, connection)

        assert result.status is PushStatus.FAILED
        assert result.error_type == "conflict"
        assert store.get(contact.contact_id).remote_link is None

    def test_receipt_without_etag_leaves_link(self, engine, bridge, store, connection):
        """Without an etag the link is not recorded."""
        bridge.push.side_effect = None
        bridge.push.return_value = PushReceipt(etag=None, href=None)
        contact = store.create(vcard(uid="u1"))

        result = engine.push_one(contact, connection)

        assert result.status is PushStatus.PUSHED
        assert store.get(contact.contact_id).remote_link is None


class TestSharedContacts:
    """Tests for pushing SHARED contacts."""

    def test_shared_routes_to_read_only_book_with_acl(
        self, engine, bridge, store, connection
    ):
        """On ACL servers shared contacts go to the read-only book."""
        contact = store.create(vcard(uid="s1"), Ownership.SHARED)

        result = engine.push_one(contact, connection)

        assert result.address_book == "shared-contacts"
        assert bridge.push.call_args[0][3] == "shared-contacts"

    def test_shared_without_acl_uses_default_book(self, engine, bridge, store):
        """Single-book servers receive shared contacts in the default book."""
        connection = Connection("phone", "https://contacts.icloud.com", "ada", NO_ACL)
        contact = store.create(vcard(uid="s1"), Ownership.SHARED)

        result = engine.push_one(contact, connection)

        assert result.address_book == "default"

    def test_shared_uid_is_contact_id_and_not_written_back(
        self, engine, bridge, store, connection
    ):
        """A shared vCard without UID is sent with the local id as UID."""
        contact = store.create(vcard(), Ownership.SHARED, contact_id="share-42")
        notifications = []
        store.subscribe(notifications.append)

        result = engine.push_one(contact, connection)

        assert result.uid == "share-42"
        sent_vcard = bridge.push.call_args[0][2]
        assert extract_uid(sent_vcard) == "share-42"
        stored = store.get("share-42")
        assert extract_uid(stored.vcard_text) is None
        assert stored.remote_link is None
        assert notifications == []

    def test_force_push_records_link_and_time(self, engine, bridge, store, connection):
        """force_push overrides and stamps the link of a shared contact."""
        contact = store.create(vcard(uid="s1"), Ownership.SHARED)
        before = utc_now()

        result = engine.force_push(contact, connection)

        assert result.status is PushStatus.PUSHED
        assert result.reason == "force_override"
        assert bridge.push.call_args[1]["force_override"] is True
        link = store.get(contact.contact_id).remote_link
        assert link.etag == '"s1-v1"'
        assert link.address_book == "shared-contacts"
        assert link.last_force_push_at >= before

    def test_force_push_ignores_change_skip(self, engine, bridge, store, connection):
        """A force push is sent even when nothing changed locally."""
        contact = store.create(vcard(uid="s1"), Ownership.SHARED)
        engine.force_push(contact, connection)

        engine.force_push(store.get(contact.contact_id), connection)

        assert bridge.push.call_count == 2


class TestPushBatch:
    """Tests for batch pushes."""

    def test_all_eligible_contacts_pushed_in_order(
        self, engine, bridge, store, connection
    ):
        """Results come back in input order across groups."""
        contacts = [store.create(vcard(f"P{i}", uid=f"u{i}")) for i in range(5)]

        batch = engine.push_batch(contacts, connection, concurrency=2)

        assert batch.success
        assert batch.total == 5
        assert batch.pushed == 5
        assert [r.uid for r in batch.results] == ["u0", "u1", "u2", "u3", "u4"]

    def test_inactive_contacts_are_not_eligible(self, engine, store, connection):
        """Archived and deleted contacts are left out of the total."""
        contacts = [
            store.create(vcard(uid="u1")),
            store.create(vcard(uid="u2"), is_archived=True),
            store.create(vcard(uid="u3"), is_deleted=True),
        ]

        batch = engine.push_batch(contacts, connection)

        assert batch.total == 1
        assert batch.pushed == 1

    def test_group_of_transport_failures_aborts(
        self, engine, bridge, store, connection
    ):
        """When a whole group fails to reach the bridge the batch stops."""
        bridge.push.side_effect = TransportError("refused")
        contacts = [store.create(vcard(uid=f"u{i}")) for i in range(5)]

        batch = engine.push_batch(contacts, connection, concurrency=2)

        assert batch.aborted
        assert not batch.success
        assert batch.failed == 2
        assert batch.not_attempted == 3
        assert bridge.push.call_count == 2
        assert "ABORTED" in batch.summary()

    def test_group_of_server_unavailable_failures_aborts(
        self, engine, bridge, store, connection
    ):
        """A server that is down stops the batch like an unreachable bridge."""
        bridge.push.side_effect = ServerUnavailableError("HTTP 503")
        contacts = [store.create(vcard(uid=f"u{i}")) for i in range(25)]

        batch = engine.push_batch(contacts, connection, concurrency=10)

        assert batch.aborted
        assert not batch.success
        assert batch.failed == 10
        assert batch.not_attempted == 15
        assert bridge.push.call_count == 10
        assert batch.error == "server unavailable: HTTP 503"

    def test_mixed_connection_failures_abort(self, engine, bridge, store, connection):
        """Transport and server-unavailable errors together still abort."""

        def down(connection_id, uid, vcard_text, address_book, **kwargs):
            if uid == "u0":
                raise TransportError("reset")
            raise ServerUnavailableError("HTTP 502")

        bridge.push.side_effect = down
        contacts = [store.create(vcard(uid=f"u{i}")) for i in range(4)]

        batch = engine.push_batch(contacts, connection, concurrency=2)

        assert batch.aborted
        assert batch.not_attempted == 2

    def test_partial_failures_continue(self, engine, bridge, store, connection):
        """Mixed outcomes in a group do not abort the batch."""

        def flaky(connection_id, uid, vcard_text, address_book, **kwargs):
            if uid == "u1":
                raise TransportError("reset")
            if uid == "u2":
                raise ConflictError("mismatch")
            return receipt_for(connection_id, uid, vcard_text, address_book)

        bridge.push.side_effect = flaky
        contacts = [store.create(vcard(uid=f"u{i}")) for i in range(4)]

        batch = engine.push_batch(contacts, connection, concurrency=2)

        assert not batch.aborted
        assert batch.pushed == 2
        assert batch.failed == 2
        assert batch.conflicts == 1
        assert {e["error_type"] for e in batch.errors} == {"transport", "conflict"}

    def test_skipped_contacts_are_counted(self, engine, bridge, store, connection):
        """Unchanged contacts count as skipped without a network call."""
        contact = store.create(vcard(uid="u1"))
        engine.push_one(contact, connection)
        bridge.push.reset_mock()

        batch = engine.push_all(connection)

        assert batch.skipped == 1
        bridge.push.assert_not_called()

    def test_push_all_uses_active_contacts(self, engine, store, connection):
        """push_all reads the store and ignores inactive contacts."""
        store.create(vcard(uid="u1"))
        store.create(vcard(uid="u2"), is_deleted=True)

        batch = engine.push_all(connection)

        assert batch.total == 1


class TestResults:
    """Tests for result helpers."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (ConflictError("x"), "conflict"),
            (ServerUnavailableError("x"), "server_unavailable"),
            (TransportError("x"), "transport"),
            (ValueError("x"), "invalid_vcard"),
        ],
    )
    def test_error_type_for(self, error, expected):
        """Errors map onto short categories."""
        assert error_type_for(error) == expected

    def test_push_result_success(self):
        """Only failures count as unsuccessful."""
        skipped = PushResult("c1", "Ada", PushStatus.SKIPPED)
        failed = PushResult("c1", "Ada", PushStatus.FAILED)
        assert skipped.success
        assert not failed.success

    def test_batch_to_dict(self):
        """to_dict reports counts and success."""
        batch = BatchResult("work", total=2)
        batch.add(PushResult("c1", "Ada", PushStatus.PUSHED))
        data = batch.to_dict()
        assert data["pushed"] == 1
        assert data["success"] is True
