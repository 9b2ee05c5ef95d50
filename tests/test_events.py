"""Tests for the sync event bus."""

import logging

from carddav_sync.sync.events import (
    EventBus,
    SafetyAbort,
    SyncCompleted,
    SyncEvent,
    SyncStarted,
    UnauthorizedEditCorrected,
)


class TestEventBus:
    """Tests for EventBus subscribe/publish."""

    def test_handler_receives_matching_events(self):
        """Handlers get events of the subscribed type only."""
        bus = EventBus()
        received = []
        bus.subscribe(SyncStarted, received.append)

        bus.publish(SyncStarted("work", direction="pull"))
        bus.publish(SafetyAbort("work", reason="server_unavailable"))

        assert received == [SyncStarted("work", direction="pull")]

    def test_base_class_subscription_receives_subclasses(self):
        """Subscribing to SyncEvent receives every event."""
        bus = EventBus()
        received = []
        bus.subscribe(SyncEvent, received.append)

        bus.publish(SyncStarted("work"))
        bus.publish(UnauthorizedEditCorrected("work", contact_id="c1"))

        assert [type(e) for e in received] == [SyncStarted, UnauthorizedEditCorrected]

    def test_unsubscribe(self):
        """Unsubscribed handlers are no longer called."""
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(SyncStarted, received.append)

        unsubscribe()
        unsubscribe()
        bus.publish(SyncStarted("work"))

        assert received == []

    def test_failing_handler_is_isolated(self, caplog):
        """A handler raising does not stop the others."""
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe(SyncCompleted, broken)
        bus.subscribe(SyncCompleted, received.append)

        with caplog.at_level(logging.WARNING):
            bus.publish(SyncCompleted("work", direction="push"))

        assert len(received) == 1
        assert "Event handler failed for SyncCompleted" in caplog.text


class TestEvents:
    """Tests for the event records."""

    def test_timestamp_ignored_in_equality(self):
        """Events compare by content, not by creation time."""
        assert SafetyAbort("work", reason="x") == SafetyAbort("work", reason="x")

    def test_timestamp_is_aware(self):
        """Timestamps are timezone-aware UTC."""
        assert SyncStarted("work").timestamp.tzinfo is not None
