"""
Sync orchestrator: the application boundary of the sync engine.

Owns the connection registry, one SyncLane per connection and one
SyncSchedule per scheduled connection. Every sync cycle of a connection
runs on its lane, so pull, push and protection cycles of one connection
never overlap while different connections proceed independently.

No operation raises: failures are logged, published as events and
returned as unsuccessful result objects.
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import CancelledError
from dataclasses import dataclass, field
from typing import Any, Optional, TypeVar, Union

from carddav_sync.api.bridge_api import BridgeAPI, BridgeAPIError
from carddav_sync.config.sync_config import (
    ConnectionConfig,
    SyncConfigError,
    SyncSettings,
)
from carddav_sync.daemon.scheduler import ScheduleIntervals, SyncSchedule
from carddav_sync.storage.db import ContactStore, StoreError
from carddav_sync.sync.capabilities import detect_capabilities
from carddav_sync.sync.classify import ChangeSkipPolicy
from carddav_sync.sync.connection import (
    Connection,
    ConnectionNotFoundError,
    ConnectionRegistry,
)
from carddav_sync.sync.contact import utc_now
from carddav_sync.sync.events import (
    ConnectionStatusChanged,
    EventBus,
    SafetyAbort,
    SyncCompleted,
    SyncFailed,
    SyncStarted,
)
from carddav_sync.sync.lane import (
    DEFAULT_MAX_PENDING,
    LaneClosedError,
    SyncLane,
)
from carddav_sync.sync.protection import ProtectionResult, SharedContactProtection
from carddav_sync.sync.pull import PullReconciler, PullResult
from carddav_sync.sync.push import DEFAULT_CONCURRENCY, BatchResult, PushEngine

logger = logging.getLogger(__name__)

R = TypeVar("R")
CycleResult = Union[PullResult, BatchResult, ProtectionResult]

# Errors that mean the cycle never ran
_NOT_RUN_ERRORS = (ConnectionNotFoundError, LaneClosedError, CancelledError)


@dataclass
class OperationResult:
    """Outcome of an operation without counts of its own."""

    success: bool
    message: str = ""
    error: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "details": dict(self.details),
        }


@dataclass
class ConnectResult:
    """Outcome of connect()."""

    connection_id: str
    success: bool
    error: Optional[str] = None
    connection: Optional[Connection] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "success": self.success,
            "error": self.error,
            "connection": self.connection.to_dict() if self.connection else None,
        }


@dataclass
class InitialSyncResult:
    """
    Outcome of an initial sync: a pull, a settle delay, then a push.

    ``push`` is None when the pull failed and the push was not attempted.
    """

    connection_id: str
    pull: PullResult
    push: Optional[BatchResult] = None

    @property
    def success(self) -> bool:
        return self.pull.success and self.push is not None and self.push.success

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "success": self.success,
            "pull": self.pull.to_dict(),
            "push": self.push.to_dict() if self.push else None,
        }


@dataclass
class ScheduleResult:
    """Outcome of start_scheduled_sync() and update_sync_intervals()."""

    connection_id: str
    success: bool
    error: Optional[str] = None
    intervals: Optional[ScheduleIntervals] = None
    protection_enabled: bool = False
    initial_sync: Optional[InitialSyncResult] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "success": self.success,
            "error": self.error,
            "intervals": self.intervals.to_dict() if self.intervals else None,
            "protection_enabled": self.protection_enabled,
            "initial_sync": self.initial_sync.to_dict() if self.initial_sync else None,
        }


@dataclass
class SyncStatus:
    """
    Snapshot of one connection's sync state.

    Attributes:
        connection_id: Connection queried
        connected: Whether the connection is registered
        connection: Connection details including capabilities
        active_cycle: The cycle in flight, if any
        pending: Requests queued behind it
        schedule: Schedule state including heartbeat count and time
        last_results: Latest result per direction
        last_pull_at: Last successful pull (from the store)
        last_push_at: Last successful push (from the store)
        last_error: Most recent failure message
    """

    connection_id: str
    connected: bool = False
    connection: Optional[dict[str, Any]] = None
    active_cycle: Optional[dict[str, Any]] = None
    pending: int = 0
    schedule: Optional[dict[str, Any]] = None
    last_results: dict[str, dict[str, Any]] = field(default_factory=dict)
    last_pull_at: Optional[str] = None
    last_push_at: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def in_progress(self) -> bool:
        return self.active_cycle is not None

    @property
    def scheduled(self) -> bool:
        return bool(self.schedule and self.schedule.get("running"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "connected": self.connected,
            "connection": self.connection,
            "in_progress": self.in_progress,
            "active_cycle": self.active_cycle,
            "pending": self.pending,
            "scheduled": self.scheduled,
            "schedule": self.schedule,
            "last_results": dict(self.last_results),
            "last_pull_at": self.last_pull_at,
            "last_push_at": self.last_push_at,
            "last_error": self.last_error,
        }


class SyncOrchestrator:
    """
    Serializes and schedules the sync cycles of every connection.

    Usage:
        orchestrator = SyncOrchestrator(bridge, store, events=bus)
        orchestrator.connect(connection_config)
        result = orchestrator.pull("work")
        orchestrator.start_scheduled_sync("work", pull_interval=120)
        status = orchestrator.get_status("work")
        orchestrator.shutdown()
    """

    def __init__(
        self,
        bridge: BridgeAPI,
        store: ContactStore,
        events: Optional[EventBus] = None,
        registry: Optional[ConnectionRegistry] = None,
        policy: Optional[ChangeSkipPolicy] = None,
        push_concurrency: int = DEFAULT_CONCURRENCY,
        max_pending: int = DEFAULT_MAX_PENDING,
        intervals: Optional[ScheduleIntervals] = None,
        initial_sync_settle: float = 0.0,
    ):
        """
        Initialize the orchestrator.

        Args:
            bridge: Bridge client
            store: Local contact store (initialized)
            events: Event bus notifications are published to
            registry: Connection registry; a new one by default
            policy: Change-skip policy for pushes
            push_concurrency: Group size of batch pushes
            max_pending: Queue capacity of each connection's lane
            intervals: Default schedule intervals
            initial_sync_settle: Seconds between initial pull and push
        """
        self.bridge = bridge
        self.store = store
        self.events = events or EventBus()
        self.registry = registry or ConnectionRegistry()
        self.max_pending = max_pending
        self.intervals = intervals or ScheduleIntervals()
        self.initial_sync_settle = initial_sync_settle

        self.reconciler = PullReconciler(bridge, store)
        self.push_engine = PushEngine(
            bridge,
            store,
            policy=policy or ChangeSkipPolicy(),
            concurrency=push_concurrency,
        )
        self.protection = SharedContactProtection(
            bridge, store, self.push_engine, self.events
        )

        self._lock = threading.Lock()
        self._lanes: dict[str, SyncLane] = {}
        self._schedules: dict[str, SyncSchedule] = {}
        self._last_results: dict[str, dict[str, dict[str, Any]]] = {}
        self._last_errors: dict[str, str] = {}
        self._closing = threading.Event()

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        events: Optional[EventBus] = None,
        bridge: Optional[BridgeAPI] = None,
        store: Optional[ContactStore] = None,
    ) -> "SyncOrchestrator":
        """
        Build an orchestrator, its bridge client and store from settings.

        Raises:
            StoreError: If the store cannot be initialized
        """
        if bridge is None:
            bridge = BridgeAPI(
                base_url=settings.bridge_url,
                timeout=settings.bridge_timeout,
                max_retries=settings.bridge_max_retries,
                initial_retry_delay=settings.bridge_initial_retry_delay,
                max_retry_delay=settings.bridge_max_retry_delay,
            )
        if store is None:
            settings.store_path.parent.mkdir(parents=True, exist_ok=True)
            store = ContactStore(str(settings.store_path))
            store.initialize()

        return cls(
            bridge,
            store,
            events=events,
            policy=ChangeSkipPolicy(
                enabled=settings.change_skip_enabled,
                clock_skew_margin=settings.clock_skew_margin,
            ),
            push_concurrency=settings.push_concurrency,
            max_pending=settings.max_pending_syncs,
            intervals=settings.intervals,
            initial_sync_settle=settings.initial_sync_settle,
        )

    # =========================================================================
    # Connections
    # =========================================================================

    def connect(self, config: ConnectionConfig) -> ConnectResult:
        """
        Open a bridge session, detect capabilities and register the connection.

        Address-book discovery failure is logged but not fatal.
        """
        connection_id = config.profile_name
        logger.info(f"Connecting {connection_id} ({config.server_url})")

        try:
            password = config.resolve_password()
            capabilities = detect_capabilities(
                config.server_url,
                server_type=config.server_type,
                supports_access_control=config.supports_access_control,
                supports_multiple_address_books=config.supports_multiple_address_books,
                address_books=config.address_book_overrides(),
            )
            self.bridge.connect(config.to_bridge_payload(password))
        except (BridgeAPIError, SyncConfigError, ValueError) as e:
            return self._connect_failed(connection_id, e)
        except Exception as e:
            logger.exception(f"Unexpected error connecting {connection_id}: {e}")
            return self._connect_failed(connection_id, e)

        address_books = []
        try:
            address_books = self.bridge.discover(
                config.server_url, config.username, password, connection_id
            ).address_books
        except BridgeAPIError as e:
            logger.warning(f"Address book discovery failed for {connection_id}: {e}")

        connection = Connection(
            connection_id=connection_id,
            server_url=config.server_url,
            username=config.username,
            capabilities=capabilities,
            address_books=address_books,
            connected_at=utc_now(),
        )
        self.registry.add(connection)
        with self._lock:
            lane = self._lanes.get(connection_id)
            if lane is None or lane.closed:
                self._lanes[connection_id] = SyncLane(connection_id, self.max_pending)
            self._last_errors.pop(connection_id, None)

        logger.info(
            f"Connected {connection_id}: {capabilities.server_type}, "
            f"{capabilities.protection_strategy.value} protection"
        )
        self.events.publish(
            ConnectionStatusChanged(
                connection_id, connected=True, capabilities=capabilities.to_dict()
            )
        )
        return ConnectResult(connection_id, success=True, connection=connection)

    def _connect_failed(self, connection_id: str, error: Exception) -> ConnectResult:
        logger.error(f"Failed to connect {connection_id}: {error}")
        self._last_errors[connection_id] = str(error)
        self.events.publish(SyncFailed(connection_id, direction="connect", error=str(error)))
        return ConnectResult(connection_id, success=False, error=str(error))

    def disconnect(self, connection_id: str) -> OperationResult:
        """
        Stop the schedule, cancel queued syncs and unregister a connection.

        A sync already in flight completes.
        """
        self.stop_scheduled_sync(connection_id)
        with self._lock:
            lane = self._lanes.pop(connection_id, None)
        cancelled = lane.close() if lane else 0

        if self.registry.remove(connection_id) is None:
            return OperationResult(
                success=False, error=f"Not connected: {connection_id}"
            )

        logger.info(f"Disconnected {connection_id}")
        self.events.publish(ConnectionStatusChanged(connection_id, connected=False))
        return OperationResult(
            success=True,
            message=f"Disconnected {connection_id}",
            details={"cancelled": cancelled},
        )

    def connections(self) -> list[Connection]:
        return [
            connection
            for connection_id in self.registry.ids()
            if (connection := self.registry.get(connection_id)) is not None
        ]

    # =========================================================================
    # Sync cycles
    # =========================================================================

    def pull(self, connection_id: str) -> PullResult:
        """Queue a pull on the connection's lane and wait for it."""
        return self._run(
            connection_id,
            "pull",
            self._pull_cycle,
            lambda error: PullResult(connection_id, success=False, error=error),
        )

    def push_all(self, connection_id: str) -> BatchResult:
        """Queue a push of every eligible contact and wait for it."""
        return self._run(
            connection_id,
            "push",
            self._push_cycle,
            lambda error: BatchResult(connection_id, error=error),
        )

    def protect(self, connection_id: str) -> ProtectionResult:
        """Queue an unauthorized-edit detection cycle and wait for it."""
        return self._run(
            connection_id,
            "protect",
            self._protect_cycle,
            lambda error: self._failed_protection(connection_id, error),
        )

    def refresh_shared(self, connection_id: str) -> ProtectionResult:
        """Queue an ecosystem refresh of shared contacts and wait for it."""
        return self._run(
            connection_id,
            "refresh",
            self._refresh_cycle,
            lambda error: self._failed_protection(connection_id, error),
        )

    def initial_sync(self, connection_id: str) -> InitialSyncResult:
        """
        Pull, let deletions settle, then push, as one queued cycle.

        The push is skipped when the pull failed.
        """

        def cycle(connection: Connection) -> InitialSyncResult:
            pull = self._pull_cycle(connection)
            if not pull.success:
                logger.warning(
                    f"Initial sync of {connection_id}: pull failed, push skipped"
                )
                return InitialSyncResult(connection_id, pull)
            if self.initial_sync_settle > 0:
                self._closing.wait(self.initial_sync_settle)
            return InitialSyncResult(connection_id, pull, self._push_cycle(connection))

        return self._run(
            connection_id,
            "initial",
            cycle,
            lambda error: InitialSyncResult(
                connection_id, PullResult(connection_id, success=False, error=error)
            ),
        )

    def _run(
        self,
        connection_id: str,
        direction: str,
        cycle: Callable[[Connection], R],
        failed: Callable[[str], R],
    ) -> R:
        try:
            connection = self.registry.require(connection_id)
            lane = self._lane(connection_id)
            return lane.run(direction, lambda: self._execute(connection, cycle))
        except _NOT_RUN_ERRORS as e:
            message = str(e) or f"{direction} cancelled"
            logger.warning(f"{direction} for {connection_id} not run: {message}")
            return failed(message)
        except Exception as e:
            logger.exception(f"{direction} for {connection_id} failed: {e}")
            self._last_errors[connection_id] = str(e)
            self.events.publish(SyncFailed(connection_id, direction=direction, error=str(e)))
            return failed(str(e))

    def _lane(self, connection_id: str) -> SyncLane:
        if self._closing.is_set():
            raise LaneClosedError("Sync orchestrator is shut down")
        with self._lock:
            lane = self._lanes.get(connection_id)
            if lane is None:
                lane = SyncLane(connection_id, self.max_pending)
                self._lanes[connection_id] = lane
            return lane

    def _execute(self, connection: Connection, cycle: Callable[[Connection], R]) -> R:
        # Listeners can tell the engine's own writes from user edits
        with self.store.engine_writes():
            return cycle(connection)

    def _pull_cycle(self, connection: Connection) -> PullResult:
        self._started(connection, "pull")
        result = self.reconciler.pull(connection)
        if result.safety_abort is not None:
            self.events.publish(
                SafetyAbort(connection.connection_id, reason=result.safety_abort.value)
            )
        self._record(connection.connection_id, "pull", result)
        return result

    def _push_cycle(self, connection: Connection) -> BatchResult:
        self._started(connection, "push")
        result = self.push_engine.push_all(connection)
        self._record(connection.connection_id, "push", result)
        return result

    def _protect_cycle(self, connection: Connection) -> ProtectionResult:
        self._started(connection, "protect")
        result = self.protection.detect_and_correct(connection)
        self._record(connection.connection_id, "protect", result)
        return result

    def _refresh_cycle(self, connection: Connection) -> ProtectionResult:
        self._started(connection, "refresh")
        result = self.protection.refresh(connection)
        self._record(connection.connection_id, "refresh", result)
        return result

    def _started(self, connection: Connection, direction: str) -> None:
        logger.debug(f"{direction} started for {connection.connection_id}")
        self.events.publish(SyncStarted(connection.connection_id, direction=direction))

    def _record(self, connection_id: str, direction: str, result: CycleResult) -> None:
        summary = result.to_dict()
        with self._lock:
            self._last_results.setdefault(connection_id, {})[direction] = summary
            if result.success:
                self._last_errors.pop(connection_id, None)
            else:
                self._last_errors[connection_id] = result.error or f"{direction} failed"

        if direction in ("pull", "push"):
            now = utc_now() if result.success else None
            try:
                self.store.update_sync_state(
                    connection_id,
                    last_pull_at=now if direction == "pull" else None,
                    last_push_at=now if direction == "push" else None,
                    last_result={"direction": direction, **summary},
                )
            except StoreError as e:
                logger.warning(f"Could not record sync state for {connection_id}: {e}")

        if result.success:
            self.events.publish(
                SyncCompleted(
                    connection_id, direction=direction, success=True, summary=summary
                )
            )
        else:
            self.events.publish(
                SyncFailed(
                    connection_id,
                    direction=direction,
                    error=result.error or f"{direction} failed",
                )
            )

    def _failed_protection(self, connection_id: str, error: str) -> ProtectionResult:
        connection = self.registry.get(connection_id)
        strategy = (
            connection.capabilities.protection_strategy.value if connection else "unknown"
        )
        return ProtectionResult(connection_id, strategy=strategy, error=error)

    # =========================================================================
    # Scheduling
    # =========================================================================

    def start_scheduled_sync(
        self,
        connection_id: str,
        pull_interval: Optional[float] = None,
        push_interval: Optional[float] = None,
        protection_interval: Optional[float] = None,
        refresh_interval: Optional[float] = None,
        run_initial_sync: bool = False,
    ) -> ScheduleResult:
        """
        Start (or restart) the repeating timers of a connection.

        Protection and refresh timers run only under the client-side
        protection strategy. Intervals default to the orchestrator's.

        Args:
            connection_id: Connection to schedule
            pull_interval: Seconds between pulls
            push_interval: Seconds between pushes
            protection_interval: Seconds between unauthorized-edit checks
            refresh_interval: Seconds between shared-contact refreshes
            run_initial_sync: Run an initial sync before starting the timers
        """
        connection = self.registry.get(connection_id)
        if connection is None:
            return ScheduleResult(
                connection_id, success=False, error=f"Not connected: {connection_id}"
            )

        try:
            intervals = self.intervals.with_overrides(
                pull=pull_interval,
                push=push_interval,
                protection=protection_interval,
                refresh=refresh_interval,
            )
        except ValueError as e:
            return ScheduleResult(connection_id, success=False, error=str(e))

        self._stop_schedule(connection_id)

        initial = None
        if run_initial_sync:
            initial = self.initial_sync(connection_id)

        protect = connection.capabilities.needs_client_protection
        schedule = SyncSchedule(
            connection_id,
            pull=lambda: self.pull(connection_id),
            push=lambda: self.push_all(connection_id),
            protect=(lambda: self.protect(connection_id)) if protect else None,
            refresh=(lambda: self.refresh_shared(connection_id)) if protect else None,
            intervals=intervals,
        )
        with self._lock:
            self._schedules[connection_id] = schedule
        schedule.start()

        return ScheduleResult(
            connection_id,
            success=True,
            intervals=intervals,
            protection_enabled=protect,
            initial_sync=initial,
        )

    def stop_scheduled_sync(self, connection_id: str) -> OperationResult:
        """
        Clear a connection's timers and its queued, not yet started syncs.

        A sync already in flight completes.
        """
        stopped = self._stop_schedule(connection_id)
        with self._lock:
            lane = self._lanes.get(connection_id)
        cancelled = lane.cancel_pending() if lane else 0

        return OperationResult(
            success=True,
            message=(
                f"Scheduled sync stopped for {connection_id}"
                if stopped
                else f"No scheduled sync for {connection_id}"
            ),
            details={"cancelled": cancelled},
        )

    def _stop_schedule(self, connection_id: str) -> bool:
        with self._lock:
            schedule = self._schedules.pop(connection_id, None)
        if schedule is None:
            return False
        schedule.stop()
        return True

    def update_sync_intervals(
        self,
        connection_id: str,
        pull_interval: Optional[float] = None,
        push_interval: Optional[float] = None,
        protection_interval: Optional[float] = None,
        refresh_interval: Optional[float] = None,
    ) -> ScheduleResult:
        """Restart a connection's schedule with changed intervals."""
        with self._lock:
            current = self._schedules.get(connection_id)
        base = current.intervals if current else self.intervals

        return self.start_scheduled_sync(
            connection_id,
            pull_interval=pull_interval or base.pull,
            push_interval=push_interval or base.push,
            protection_interval=protection_interval or base.protection,
            refresh_interval=refresh_interval or base.refresh,
        )

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self, connection_id: str) -> SyncStatus:
        connection = self.registry.get(connection_id)
        with self._lock:
            lane = self._lanes.get(connection_id)
            schedule = self._schedules.get(connection_id)
            last_results = dict(self._last_results.get(connection_id, {}))
            last_error = self._last_errors.get(connection_id)

        status = SyncStatus(
            connection_id=connection_id,
            connected=connection is not None,
            connection=connection.to_dict() if connection else None,
            schedule=schedule.to_dict() if schedule else None,
            last_results=last_results,
            last_error=last_error,
        )
        if lane is not None:
            cycle = lane.active_cycle
            status.active_cycle = cycle.to_dict() if cycle else None
            status.pending = lane.pending

        try:
            state = self.store.get_sync_state(connection_id)
        except StoreError as e:
            logger.warning(f"Could not read sync state for {connection_id}: {e}")
            state = None
        if state:
            if state["last_pull_at"]:
                status.last_pull_at = state["last_pull_at"].isoformat()
            if state["last_push_at"]:
                status.last_push_at = state["last_push_at"].isoformat()
            if not last_results and state["last_result"]:
                stored = dict(state["last_result"])
                status.last_results = {stored.pop("direction", "last"): stored}

        return status

    def health(self, connection_id: Optional[str] = None) -> OperationResult:
        """Check the bridge, optionally for one connection."""
        try:
            body = self.bridge.health(connection_id)
        except BridgeAPIError as e:
            logger.warning(f"Bridge health check failed: {e}")
            return OperationResult(success=False, error=str(e))
        return OperationResult(
            success=True, message=str(body.get("status", "ok")), details=body
        )

    def shutdown(self) -> None:
        """Stop every schedule, cancel queued syncs and close the bridge client."""
        self._closing.set()
        with self._lock:
            connection_ids = list(self._schedules)
            lanes = list(self._lanes.values())
            self._lanes.clear()
        for connection_id in connection_ids:
            self._stop_schedule(connection_id)
        for lane in lanes:
            lane.close()
        self.bridge.close()
        logger.info("Sync orchestrator shut down")
