"""
Observer interface for sync notifications.

The orchestrator and the protection subsystem publish typed events to an
EventBus; the surrounding application subscribes to the event types it
cares about.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, TypeVar

from carddav_sync.sync.contact import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncEvent:
    """Base class for all events."""

    connection_id: str
    timestamp: datetime = field(default_factory=utc_now, compare=False)


@dataclass(frozen=True)
class ConnectionStatusChanged(SyncEvent):
    """A connection was established or removed."""

    connected: bool = False
    capabilities: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class SyncStarted(SyncEvent):
    direction: str = ""


@dataclass(frozen=True)
class SyncCompleted(SyncEvent):
    """A cycle finished; ``summary`` is the result's to_dict()."""

    direction: str = ""
    success: bool = True
    summary: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class SyncFailed(SyncEvent):
    direction: str = ""
    error: str = ""


@dataclass(frozen=True)
class SafetyAbort(SyncEvent):
    """A pull refused to apply changes (server down or empty response)."""

    reason: str = ""


@dataclass(frozen=True)
class UnauthorizedEditCorrected(SyncEvent):
    """A shared contact edited on the server was overwritten with the local copy."""

    contact_id: str = ""
    display_name: str = ""
    uid: str = ""


E = TypeVar("E", bound=SyncEvent)
Handler = Callable[[Any], None]


class EventBus:
    """
    Synchronous publish/subscribe channel for sync events.

    Handlers subscribed to a base class receive its subclasses too. A
    failing handler is logged and does not affect other handlers or the
    publisher.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(UnauthorizedEditCorrected, on_corrected)
        bus.publish(UnauthorizedEditCorrected("work", contact_id="c1"))
        unsubscribe()
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[type, Handler]] = []
        self._lock = threading.Lock()

    def subscribe(
        self, event_type: type[E], handler: Callable[[E], None]
    ) -> Callable[[], None]:
        """
        Subscribe a handler to an event type.

        Returns:
            A callable that removes the subscription
        """
        entry = (event_type, handler)
        with self._lock:
            self._handlers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._handlers:
                    self._handlers.remove(entry)

        return unsubscribe

    def publish(self, event: SyncEvent) -> None:
        with self._lock:
            handlers = [h for t, h in self._handlers if isinstance(event, t)]

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(
                    f"Event handler failed for {type(event).__name__}: {e}"
                )
