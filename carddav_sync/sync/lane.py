"""
Per-connection mutual exclusion with a FIFO queue of pending syncs.

Every sync cycle of a connection (pull, push, protection) is submitted to
that connection's SyncLane. The lane runs one cycle at a time on its own
drain thread, in submission order. Requests made while a cycle runs wait
in a bounded queue: a full queue blocks the submitter until a slot frees,
so requests are never dropped or rejected.
"""

import logging
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, TypeVar

from carddav_sync.sync.contact import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 16

T = TypeVar("T")


class LaneClosedError(Exception):
    """Raised when submitting to a lane that has been closed."""

    pass


@dataclass(frozen=True)
class SyncCycle:
    """Run-state of the cycle a lane is executing."""

    connection_id: str
    direction: str
    started_at: datetime
    in_progress: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "direction": self.direction,
            "started_at": self.started_at.isoformat(),
            "in_progress": self.in_progress,
        }


@dataclass
class _Request:
    direction: str
    task: Callable[[], Any]
    future: "Future[Any]"


class SyncLane:
    """
    Single-flight executor for one connection.

    Usage:
        lane = SyncLane("work")
        future = lane.submit("pull", lambda: reconciler.pull(connection))
        result = future.result()

        # or blocking:
        result = lane.run("push", lambda: engine.push_all(connection))
    """

    def __init__(self, connection_id: str, max_pending: int = DEFAULT_MAX_PENDING):
        """
        Initialize the lane.

        Args:
            connection_id: Connection this lane serializes
            max_pending: Queue capacity; submitters block while it is full
        """
        self.connection_id = connection_id
        self.max_pending = max(1, max_pending)
        self._lock = threading.Lock()
        self._not_full = threading.Condition(self._lock)
        self._queue: deque[_Request] = deque()
        self._active: Optional[SyncCycle] = None
        self._worker: Optional[threading.Thread] = None
        self._closed = False
        self._completed = 0

    @property
    def active_cycle(self) -> Optional[SyncCycle]:
        with self._lock:
            return self._active

    @property
    def is_running(self) -> bool:
        return self.active_cycle is not None

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def completed(self) -> int:
        with self._lock:
            return self._completed

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def submit(self, direction: str, task: Callable[[], T]) -> "Future[T]":
        """
        Queue a cycle behind everything already submitted.

        Blocks while the queue is full.

        Args:
            direction: Label of the cycle (pull, push, protect, ...)
            task: Callable running the cycle

        Returns:
            Future resolving to the task's return value

        Raises:
            LaneClosedError: If the lane is closed (also while waiting)
        """
        future: Future[T] = Future()

        with self._not_full:
            while len(self._queue) >= self.max_pending and not self._closed:
                logger.debug(
                    f"{self.connection_id}: sync queue full, waiting for a slot"
                )
                self._not_full.wait()

            if self._closed:
                raise LaneClosedError(f"Sync lane closed: {self.connection_id}")

            self._queue.append(_Request(direction, task, future))
            if self._active is not None or len(self._queue) > 1:
                logger.debug(
                    f"{self.connection_id}: {direction} queued behind "
                    f"{len(self._queue) - 1} pending request(s)"
                )

            if self._worker is None:
                self._worker = threading.Thread(
                    target=self._drain,
                    name=f"sync-lane-{self.connection_id}",
                    daemon=True,
                )
                self._worker.start()

        return future

    def run(
        self, direction: str, task: Callable[[], T], timeout: Optional[float] = None
    ) -> T:
        """Submit a cycle and wait for its result."""
        return self.submit(direction, task).result(timeout)

    def _drain(self) -> None:
        while True:
            with self._not_full:
                if not self._queue:
                    self._worker = None
                    return
                request = self._queue.popleft()
                self._not_full.notify()

                if not request.future.set_running_or_notify_cancel():
                    continue
                self._active = SyncCycle(
                    self.connection_id, request.direction, utc_now()
                )

            try:
                value = request.task()
            except Exception as e:
                logger.error(
                    f"{self.connection_id}: {request.direction} cycle raised: {e}"
                )
                request.future.set_exception(e)
            else:
                request.future.set_result(value)
            finally:
                with self._lock:
                    self._active = None
                    self._completed += 1

    def cancel_pending(self) -> int:
        """
        Cancel queued requests that have not started.

        The cycle in flight, if any, is allowed to complete.

        Returns:
            Number of cancelled requests
        """
        with self._not_full:
            cancelled = 0
            while self._queue:
                if self._queue.popleft().future.cancel():
                    cancelled += 1
            self._not_full.notify_all()

        if cancelled:
            logger.info(f"{self.connection_id}: cancelled {cancelled} queued sync(s)")
        return cancelled

    def close(self) -> int:
        """Stop accepting requests and cancel the queued ones."""
        with self._lock:
            self._closed = True
        return self.cancel_pending()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until nothing is queued or running.

        Returns:
            True if the lane went idle within the timeout
        """
        with self._lock:
            worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()
