"""
Scheduling for background CardDAV synchronization.

Provides:
- RepeatingTimer: runs a callback on its own thread at a fixed interval
- SyncSchedule: the timers of one connection (pull, push offset after
  pull, heartbeat and, for client-side protection, detect and refresh)
- DaemonRunner: foreground runner with signal handling and a PID file
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from carddav_sync.utils import PID_FILE_NAME, config_path

logger = logging.getLogger(__name__)

DEFAULT_PULL_INTERVAL = 300
DEFAULT_PUSH_INTERVAL = 300
DEFAULT_PUSH_OFFSET = 30
DEFAULT_HEARTBEAT_INTERVAL = 60
DEFAULT_PROTECTION_INTERVAL = 300
DEFAULT_REFRESH_INTERVAL = 1800


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DaemonError(Exception):
    """Base exception for daemon-related errors."""

    pass


class PIDFileError(DaemonError):
    """Raised when PID file operations fail."""

    pass


class DaemonAlreadyRunningError(DaemonError):
    """Raised when attempting to start a daemon that is already running."""

    pass


@dataclass(frozen=True)
class ScheduleIntervals:
    """
    Intervals of a connection's schedule, in seconds.

    Attributes:
        pull: Pull cycle interval
        push: Push cycle interval
        push_offset: Delay of the first push after the first pull timer
            starts, so pull deletions settle before anything is re-pushed
        heartbeat: Liveness signal interval
        protection: Unauthorized-edit detection interval
        refresh: Ecosystem refresh interval
    """

    pull: float = DEFAULT_PULL_INTERVAL
    push: float = DEFAULT_PUSH_INTERVAL
    push_offset: float = DEFAULT_PUSH_OFFSET
    heartbeat: float = DEFAULT_HEARTBEAT_INTERVAL
    protection: float = DEFAULT_PROTECTION_INTERVAL
    refresh: float = DEFAULT_REFRESH_INTERVAL

    def __post_init__(self) -> None:
        for name in ("pull", "push", "heartbeat", "protection", "refresh"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} interval must be > 0, got {value}")
        if self.push_offset < 0:
            raise ValueError(f"push_offset must be >= 0, got {self.push_offset}")

    def with_overrides(self, **overrides: float | None) -> ScheduleIntervals:
        """Copy with the given non-None values replaced."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    def to_dict(self) -> dict[str, float]:
        return {
            "pull": self.pull,
            "push": self.push,
            "push_offset": self.push_offset,
            "heartbeat": self.heartbeat,
            "protection": self.protection,
            "refresh": self.refresh,
        }


class RepeatingTimer:
    """
    Calls a function every ``interval`` seconds on a daemon thread.

    The first call happens after ``initial_delay`` (default: one interval).
    A call that raises is logged and the timer keeps running. Calls never
    overlap: the next wait starts when the previous call returns.

    Usage:
        timer = RepeatingTimer("pull-work", 300, run_pull)
        timer.start()
        ...
        timer.stop()
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Any],
        initial_delay: float | None = None,
    ):
        if interval <= 0:
            raise ValueError(f"Timer interval must be > 0, got {interval}")
        self.name = name
        self.interval = interval
        self.initial_delay = interval if initial_delay is None else initial_delay
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.run_count = 0
        self.error_count = 0
        self.last_run_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"Timer {self.name} started (every {self.interval}s)")

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the timer; a call in progress is waited for up to ``timeout``."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.debug(f"Timer {self.name} stopped")

    def _loop(self) -> None:
        delay = self.initial_delay
        while not self._stop_event.wait(delay):
            self._fire()
            delay = self.interval

    def _fire(self) -> None:
        self.run_count += 1
        self.last_run_at = _now()
        try:
            self._callback()
        except Exception as e:
            self.error_count += 1
            logger.error(f"Timer {self.name} callback failed: {e}")


@dataclass
class ScheduleStats:
    """Liveness information of a running schedule."""

    started_at: datetime | None = None
    heartbeat_count: int = 0
    last_heartbeat_at: datetime | None = None
    runs: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "heartbeat_count": self.heartbeat_count,
            "last_heartbeat_at": (
                self.last_heartbeat_at.isoformat() if self.last_heartbeat_at else None
            ),
            "runs": dict(self.runs),
        }


class SyncSchedule:
    """
    Independent repeating timers of one connection.

    Pull and push run on separate timers; the first push is delayed by
    ``push_offset`` on top of the push interval so it always follows a
    pull. Protection and refresh timers exist only when their callbacks
    are given (client-side protection strategy).

    Usage:
        schedule = SyncSchedule(
            "work",
            pull=lambda: orchestrator.pull("work"),
            push=lambda: orchestrator.push_all("work"),
        )
        schedule.start()
        schedule.stats.heartbeat_count
        schedule.stop()
    """

    def __init__(
        self,
        connection_id: str,
        pull: Callable[[], Any],
        push: Callable[[], Any],
        protect: Callable[[], Any] | None = None,
        refresh: Callable[[], Any] | None = None,
        intervals: ScheduleIntervals | None = None,
    ):
        self.connection_id = connection_id
        self.intervals = intervals or ScheduleIntervals()
        self.stats = ScheduleStats()
        self._lock = threading.Lock()

        i = self.intervals
        self._timers: dict[str, RepeatingTimer] = {
            "pull": RepeatingTimer(f"pull-{connection_id}", i.pull, pull),
            "push": RepeatingTimer(
                f"push-{connection_id}", i.push, push, i.push + i.push_offset
            ),
            "heartbeat": RepeatingTimer(
                f"heartbeat-{connection_id}", i.heartbeat, self.heartbeat
            ),
        }
        if protect is not None:
            self._timers["protect"] = RepeatingTimer(
                f"protect-{connection_id}", i.protection, protect
            )
        if refresh is not None:
            self._timers["refresh"] = RepeatingTimer(
                f"refresh-{connection_id}", i.refresh, refresh
            )

    @property
    def timer_names(self) -> list[str]:
        return list(self._timers)

    @property
    def protection_enabled(self) -> bool:
        return "protect" in self._timers

    @property
    def running(self) -> bool:
        return any(timer.is_running for timer in self._timers.values())

    def start(self) -> None:
        self.stats.started_at = _now()
        for timer in self._timers.values():
            timer.start()
        logger.info(
            f"Scheduled sync started for {self.connection_id}: "
            f"pull every {self.intervals.pull}s, push every {self.intervals.push}s "
            f"(offset {self.intervals.push_offset}s)"
            + (
                f", protection every {self.intervals.protection}s, "
                f"refresh every {self.intervals.refresh}s"
                if self.protection_enabled
                else ""
            )
        )

    def stop(self) -> None:
        for timer in self._timers.values():
            timer.stop()
        logger.info(f"Scheduled sync stopped for {self.connection_id}")

    def heartbeat(self) -> None:
        """Record that the schedule's timers are alive."""
        with self._lock:
            self.stats.heartbeat_count += 1
            self.stats.last_heartbeat_at = _now()
            self.stats.runs = {
                name: timer.run_count
                for name, timer in self._timers.items()
                if name != "heartbeat"
            }
            count = self.stats.heartbeat_count
        logger.debug(f"Heartbeat #{count} for {self.connection_id}")

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            stats = self.stats.to_dict()
        return {
            "connection_id": self.connection_id,
            "running": self.running,
            "timers": self.timer_names,
            "protection_enabled": self.protection_enabled,
            "intervals": self.intervals.to_dict(),
            **stats,
        }


class PIDFileManager:
    """
    Manages the PID file of a running daemon.

    Prevents two daemons from syncing the same store at once.
    """

    def __init__(self, pid_file: Path | None = None):
        """
        Args:
            pid_file: Path to the PID file. Defaults to <config dir>/daemon.pid
        """
        self.pid_file = pid_file or config_path(PID_FILE_NAME)

    def create(self) -> None:
        """
        Write the current process ID, replacing a stale file.

        Raises:
            PIDFileError: If the PID file cannot be written.
            DaemonAlreadyRunningError: If a daemon is already running.
        """
        existing_pid = self.read()
        if existing_pid is not None:
            if self.is_process_running(existing_pid):
                raise DaemonAlreadyRunningError(
                    f"Daemon already running with PID {existing_pid}"
                )
            logger.warning(
                f"Removing stale PID file (process {existing_pid} not running)"
            )
            self.remove()

        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            self.pid_file.write_text(str(os.getpid()))
            logger.debug(f"Created PID file: {self.pid_file}")
        except OSError as e:
            raise PIDFileError(f"Failed to create PID file {self.pid_file}: {e}") from e

    def read(self) -> int | None:
        """
        Returns:
            The stored PID, or None if there is no PID file.

        Raises:
            PIDFileError: If the file exists but cannot be read or parsed.
        """
        if not self.pid_file.exists():
            return None

        try:
            content = self.pid_file.read_text().strip()
        except OSError as e:
            raise PIDFileError(f"Failed to read PID file {self.pid_file}: {e}") from e
        try:
            return int(content)
        except ValueError as e:
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content}") from e

    def remove(self) -> None:
        if not self.pid_file.exists():
            return
        try:
            self.pid_file.unlink()
            logger.debug(f"Removed PID file: {self.pid_file}")
        except OSError as e:
            raise PIDFileError(f"Failed to remove PID file {self.pid_file}: {e}") from e

    @staticmethod
    def is_process_running(pid: int) -> bool:
        try:
            # Signal 0 only checks that the process exists
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True

    def running_pid(self) -> int | None:
        """PID of a live daemon, or None."""
        try:
            pid = self.read()
        except PIDFileError as e:
            logger.warning(str(e))
            return None
        if pid is not None and self.is_process_running(pid):
            return pid
        return None


class DaemonRunner:
    """
    Runs scheduled syncs in the foreground until SIGTERM or SIGINT.

    Usage:
        runner = DaemonRunner()
        runner.run(on_start=start_schedules, on_stop=orchestrator.shutdown)
    """

    def __init__(self, pid_file: Path | None = None, poll_interval: float = 1.0):
        self._pid_manager = PIDFileManager(pid_file)
        self.poll_interval = poll_interval
        self._shutdown = threading.Event()
        self._running = False
        self._original_sigterm_handler: Any = None
        self._original_sigint_handler: Any = None

    @property
    def pid_file(self) -> Path:
        return self._pid_manager.pid_file

    def _setup_signal_handlers(self) -> None:
        self._original_sigterm_handler = signal.signal(
            signal.SIGTERM, self._signal_handler
        )
        self._original_sigint_handler = signal.signal(
            signal.SIGINT, self._signal_handler
        )
        logger.debug("Signal handlers installed for SIGTERM and SIGINT")

    def _restore_signal_handlers(self) -> None:
        if self._original_sigterm_handler is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm_handler)
        if self._original_sigint_handler is not None:
            signal.signal(signal.SIGINT, self._original_sigint_handler)
        logger.debug("Signal handlers restored")

    def _signal_handler(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, shutting down...")
        self._shutdown.set()

    def run(
        self,
        on_start: Callable[[], None],
        on_stop: Callable[[], None],
    ) -> None:
        """
        Start the schedules and block until a shutdown is requested.

        Args:
            on_start: Connects and starts schedules
            on_stop: Stops schedules and releases resources; always called

        Raises:
            DaemonAlreadyRunningError: If another daemon holds the PID file
            PIDFileError: If the PID file cannot be written
        """
        self._pid_manager.create()
        logger.info(f"Daemon started (PID: {os.getpid()}, PID file: {self.pid_file})")

        self._setup_signal_handlers()
        self._shutdown.clear()
        self._running = True

        try:
            on_start()
            while not self._shutdown.wait(self.poll_interval):
                pass
        finally:
            self._running = False
            try:
                on_stop()
            finally:
                self._restore_signal_handlers()
                self._pid_manager.remove()
                logger.info("Daemon stopped")

    def stop(self) -> None:
        """Request shutdown; safe to call from any thread."""
        logger.info("Stop requested")
        self._shutdown.set()

    def is_running(self) -> bool:
        return self._running

    def running_pid(self) -> int | None:
        return self._pid_manager.running_pid()


__all__ = [
    "DEFAULT_HEARTBEAT_INTERVAL",
    "DEFAULT_PROTECTION_INTERVAL",
    "DEFAULT_PULL_INTERVAL",
    "DEFAULT_PUSH_INTERVAL",
    "DEFAULT_PUSH_OFFSET",
    "DEFAULT_REFRESH_INTERVAL",
    "DaemonAlreadyRunningError",
    "DaemonError",
    "DaemonRunner",
    "PIDFileError",
    "PIDFileManager",
    "RepeatingTimer",
    "ScheduleIntervals",
    "ScheduleStats",
    "SyncSchedule",
]
