"""
Tests for the sync orchestrator.

Drives SyncOrchestrator with a mocked bridge and an in-memory store:
connecting, queued sync cycles, events, scheduling and status.
"""

import threading
from unittest.mock import MagicMock

import pytest

from carddav_sync.api.bridge_api import (
    AddressBookInfo,
    BridgeAPI,
    BridgeAPIError,
    DiscoveryResult,
    PushReceipt,
    ServerUnavailableError,
)
from carddav_sync.config.sync_config import ConnectionConfig, SyncSettings
from carddav_sync.daemon import ScheduleIntervals
from carddav_sync.storage.db import ContactStore
from carddav_sync.sync.contact import Ownership, RemoteContact
from carddav_sync.sync.events import (
    ConnectionStatusChanged,
    EventBus,
    SafetyAbort,
    SyncCompleted,
    SyncEvent,
    SyncFailed,
    SyncStarted,
)
from carddav_sync.sync.orchestrator import SyncOrchestrator

LONG = ScheduleIntervals(
    pull=3600, push=3600, heartbeat=3600, protection=3600, refresh=3600
)
WAIT = 5.0


def vcard(uid, name="Ada Lovelace"):
    return f"BEGIN:VCARD\nVERSION:3.0\nFN:{name}\nUID:{uid}\nEND:VCARD"


def remote(uid):
    return RemoteContact(
        uid=uid,
        vcard_text=vcard(uid),
        etag='"e1"',
        href=f"/my-contacts/{uid}.vcf",
        address_book="my-contacts",
    )


WORK = ConnectionConfig(
    profile_name="work",
    server_url="https://dav.example.com/dav.php",
    username="ada",
    password="secret",
)
PHONE = ConnectionConfig(
    profile_name="phone",
    server_url="https://contacts.icloud.com",
    username="ada@example.com",
    password="app-password",
)


@pytest.fixture
def bridge():
    mock_bridge = MagicMock(spec=BridgeAPI)
    mock_bridge.connect.return_value = {"success": True}
    mock_bridge.discover.return_value = DiscoveryResult(
        address_books=[AddressBookInfo(href="/ab/my-contacts/", name="my-contacts")]
    )
    mock_bridge.fetch.return_value = []
    mock_bridge.push.return_value = PushReceipt(etag='"p1"', href="/x.vcf")
    return mock_bridge


@pytest.fixture
def store():
    contact_store = ContactStore(":memory:")
    contact_store.initialize()
    yield contact_store
    contact_store.close()


@pytest.fixture
def events():
    bus = EventBus()
    bus.received = []
    bus.subscribe(SyncEvent, bus.received.append)
    return bus


@pytest.fixture
def orchestrator(bridge, store, events):
    instance = SyncOrchestrator(bridge, store, events=events, intervals=LONG)
    yield instance
    instance.shutdown()


def event_types(events):
    return [type(e) for e in events.received]


class TestConnect:
    """Tests for connect and disconnect."""

    def test_connect_registers_connection(self, orchestrator, bridge, events):
        """A successful handshake registers the connection with capabilities."""
        result = orchestrator.connect(WORK)

        assert result.success
        assert result.connection.capabilities.server_type == "Baikal"
        assert result.connection.address_books[0].name == "my-contacts"
        assert "work" in orchestrator.registry
        bridge.connect.assert_called_once_with(
            {
                "profileName": "work",
                "serverUrl": "https://dav.example.com/dav.php",
                "username": "ada",
                "password": "secret",
            }
        )
        capabilities = result.connection.capabilities.to_dict()
        assert events.received[-1] == ConnectionStatusChanged(
            "work", connected=True, capabilities=capabilities
        )

    def test_connect_failure(self, orchestrator, bridge, events):
        """A refused handshake fails without registering anything."""
        bridge.connect.side_effect = BridgeAPIError("bad credentials")

        result = orchestrator.connect(WORK)

        assert not result.success
        assert "bad credentials" in result.error
        assert "work" not in orchestrator.registry
        assert SyncFailed in event_types(events)
        assert orchestrator.get_status("work").last_error == result.error

    def test_missing_password_env_fails(self, orchestrator, bridge, monkeypatch):
        """An unset password variable fails the connect."""
        monkeypatch.delenv("NOPE_PASSWORD", raising=False)
        config = ConnectionConfig(
            "work", "https://dav.example.com", "ada", password_env="NOPE_PASSWORD"
        )

        result = orchestrator.connect(config)

        assert not result.success
        assert "NOPE_PASSWORD" in result.error
        bridge.connect.assert_not_called()

    def test_discovery_failure_is_not_fatal(self, orchestrator, bridge):
        """Connect succeeds without address books when discovery fails."""
        bridge.discover.side_effect = BridgeAPIError("PROPFIND failed")

        result = orchestrator.connect(WORK)

        assert result.success
        assert result.connection.address_books == []

    def test_disconnect(self, orchestrator, events):
        """disconnect unregisters and announces the connection."""
        orchestrator.connect(WORK)

        result = orchestrator.disconnect("work")

        assert result.success
        assert "work" not in orchestrator.registry
        assert events.received[-1] == ConnectionStatusChanged("work", connected=False)
        assert not orchestrator.disconnect("work").success


class TestSyncCycles:
    """Tests for pull, push and protection cycles."""

    def test_pull_unknown_connection(self, orchestrator, bridge):
        """Cycles of unknown connections fail without touching the bridge."""
        result = orchestrator.pull("nope")

        assert not result.success
        assert "Not connected" in result.error
        bridge.fetch.assert_not_called()

    def test_pull_imports_and_records_state(
        self, orchestrator, bridge, store, events
    ):
        """A pull imports contacts, stores sync state and publishes events."""
        orchestrator.connect(WORK)
        bridge.fetch.return_value = [remote("u1")]

        result = orchestrator.pull("work")

        assert result.success
        assert result.created == 1
        assert store.find_by_uid("u1").ownership is Ownership.IMPORTED
        assert store.get_sync_state("work")["last_pull_at"] is not None
        assert event_types(events)[-2:] == [SyncStarted, SyncCompleted]
        assert events.received[-1].summary["created"] == 1

    def test_engine_writes_are_flagged(self, orchestrator, bridge, store):
        """Store writes made during a cycle carry the engine flag."""
        orchestrator.connect(WORK)
        bridge.fetch.return_value = [remote("u1")]
        notifications = []
        store.subscribe(notifications.append)

        orchestrator.pull("work")
        store.create(vcard("u2"))

        assert [n.from_engine for n in notifications] == [True, False]

    def test_server_unavailable_publishes_safety_abort(
        self, orchestrator, bridge, events
    ):
        """A pull against a down server emits SafetyAbort and SyncFailed."""
        orchestrator.connect(WORK)
        bridge.fetch.side_effect = ServerUnavailableError("HTTP 503")

        result = orchestrator.pull("work")

        assert not result.success
        assert SafetyAbort("work", reason="server_unavailable") in events.received
        assert event_types(events)[-1] is SyncFailed
        assert orchestrator.get_status("work").last_error == result.error

    def test_unexpected_error_becomes_failed_result(
        self, orchestrator, bridge, events
    ):
        """An exception escaping a cycle is returned as a failure."""
        orchestrator.connect(WORK)
        bridge.fetch.side_effect = RuntimeError("boom")

        result = orchestrator.pull("work")

        assert not result.success
        assert result.error == "boom"
        assert event_types(events)[-1] is SyncFailed

    def test_push_all(self, orchestrator, bridge, store):
        """push_all pushes local contacts and stores the push time."""
        orchestrator.connect(WORK)
        store.create(vcard("u1"))

        result = orchestrator.push_all("work")

        assert result.success
        assert result.pushed == 1
        assert store.get_sync_state("work")["last_push_at"] is not None

    def test_protect_with_acl_is_skipped(self, orchestrator, bridge):
        """Protection cycles are no-ops on servers with read-only books."""
        orchestrator.connect(WORK)

        result = orchestrator.protect("work")

        assert result.success
        assert result.skipped
        bridge.fetch.assert_not_called()

    def test_refresh_shared_without_acl(self, orchestrator, bridge, store):
        """refresh_shared force-pushes shared contacts on single-book servers."""
        orchestrator.connect(PHONE)
        store.create(vcard("s1"), Ownership.SHARED)

        result = orchestrator.refresh_shared("phone")

        assert result.refreshed == 1
        assert bridge.push.call_args[1]["force_override"] is True

    def test_initial_sync_pulls_then_pushes(self, orchestrator, bridge, store):
        """An initial sync runs a pull followed by a push."""
        orchestrator.connect(WORK)
        store.create(vcard("mine"))
        bridge.fetch.return_value = [remote("u1")]

        result = orchestrator.initial_sync("work")

        assert result.success
        assert result.pull.created == 1
        assert result.push.pushed == 1

    def test_initial_sync_skips_push_after_failed_pull(self, orchestrator, bridge):
        """A failed pull prevents the push."""
        orchestrator.connect(WORK)
        bridge.fetch.side_effect = ServerUnavailableError("down")

        result = orchestrator.initial_sync("work")

        assert not result.success
        assert result.push is None
        bridge.push.assert_not_called()

    def test_status_reports_cycle_in_flight(self, orchestrator, bridge):
        """get_status shows the running cycle and queued requests."""
        orchestrator.connect(WORK)
        started, release = threading.Event(), threading.Event()

        def slow_fetch(*args, **kwargs):
            started.set()
            release.wait(WAIT)
            return []

        bridge.fetch.side_effect = slow_fetch
        worker = threading.Thread(target=orchestrator.pull, args=("work",))
        worker.start()
        assert started.wait(WAIT)

        status = orchestrator.get_status("work")
        release.set()
        worker.join(WAIT)

        assert status.in_progress
        assert status.active_cycle["direction"] == "pull"
        assert status.connected


class TestScheduling:
    """Tests for scheduled sync."""

    def test_start_without_protection_on_acl_server(self, orchestrator):
        """ACL servers get pull, push and heartbeat timers only."""
        orchestrator.connect(WORK)

        result = orchestrator.start_scheduled_sync("work", pull_interval=600)

        assert result.success
        assert not result.protection_enabled
        assert result.intervals.pull == 600
        status = orchestrator.get_status("work")
        assert status.scheduled
        assert status.schedule["timers"] == ["pull", "push", "heartbeat"]

    def test_start_with_protection_on_single_book_server(self, orchestrator):
        """Client-side protection adds detection and refresh timers."""
        orchestrator.connect(PHONE)

        result = orchestrator.start_scheduled_sync("phone")

        assert result.protection_enabled
        assert "protect" in orchestrator.get_status("phone").schedule["timers"]

    def test_start_unknown_connection(self, orchestrator):
        """Scheduling needs a connection."""
        result = orchestrator.start_scheduled_sync("nope")
        assert not result.success
        assert "Not connected" in result.error

    def test_invalid_interval(self, orchestrator):
        """Non-positive intervals are rejected."""
        orchestrator.connect(WORK)
        result = orchestrator.start_scheduled_sync("work", pull_interval=-1)
        assert not result.success
        assert "pull interval" in result.error

    def test_start_with_initial_sync(self, orchestrator, bridge):
        """run_initial_sync runs a pull and push before the timers start."""
        orchestrator.connect(WORK)

        result = orchestrator.start_scheduled_sync("work", run_initial_sync=True)

        assert result.initial_sync is not None
        assert result.initial_sync.pull.success
        bridge.fetch.assert_called_once()

    def test_stop(self, orchestrator):
        """Stopping clears the schedule."""
        orchestrator.connect(WORK)
        orchestrator.start_scheduled_sync("work")

        result = orchestrator.stop_scheduled_sync("work")

        assert result.success
        assert "stopped" in result.message
        assert not orchestrator.get_status("work").scheduled
        assert "No scheduled sync" in orchestrator.stop_scheduled_sync("work").message

    def test_update_intervals_keeps_the_others(self, orchestrator):
        """Only the changed interval is replaced."""
        orchestrator.connect(WORK)
        orchestrator.start_scheduled_sync("work", push_interval=900)

        result = orchestrator.update_sync_intervals("work", pull_interval=120)

        assert result.intervals.pull == 120
        assert result.intervals.push == 900


class TestHealthAndLifecycle:
    """Tests for health, from_settings and shutdown."""

    def test_health(self, orchestrator, bridge):
        """A healthy bridge reports its status."""
        bridge.health.return_value = {"success": True, "status": "ok"}
        result = orchestrator.health("work")
        assert result.success
        assert result.message == "ok"
        bridge.health.assert_called_once_with("work")

    def test_health_failure(self, orchestrator, bridge):
        """Bridge failures are returned, not raised."""
        bridge.health.side_effect = BridgeAPIError("unreachable")
        result = orchestrator.health()
        assert not result.success
        assert result.error == "unreachable"

    def test_shutdown_stops_schedules(self, orchestrator, bridge):
        """shutdown stops timers and closes the bridge client."""
        orchestrator.connect(WORK)
        orchestrator.start_scheduled_sync("work")

        orchestrator.shutdown()

        assert not orchestrator.get_status("work").scheduled
        bridge.close.assert_called()
        result = orchestrator.pull("work")
        assert not result.success
        assert "shut down" in result.error

    def test_from_settings(self, tmp_path, bridge):
        """from_settings creates the store and applies push settings."""
        settings = SyncSettings(
            store_path=tmp_path / "data" / "contacts.db",
            push_concurrency=3,
            clock_skew_margin=2.0,
        )

        orchestrator = SyncOrchestrator.from_settings(settings, bridge=bridge)

        assert (tmp_path / "data" / "contacts.db").exists()
        assert orchestrator.push_engine.concurrency == 3
        assert orchestrator.push_engine.policy.clock_skew_margin == 2.0
        orchestrator.shutdown()
