"""
carddav_sync.daemon - Scheduling and foreground daemon

Interval parsing, repeating timers, per-connection schedules and the
signal-aware runner used by ``carddav-sync run``.
"""

import re

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


def parse_interval(interval: str | int | float) -> int:
    """Parse an interval specification into seconds.

    Args:
        interval: Interval specification. Examples:
            - "30s" -> 30
            - "5m" -> 300
            - "1h" -> 3600
            - "1d" -> 86400
            - 300 -> 300 (pass-through)
            - "300" -> 300 (numeric string)

    Returns:
        Interval in seconds.

    Raises:
        ValueError: If the format is invalid, the unit unknown or the
            value not positive.
    """
    if isinstance(interval, bool):
        raise ValueError("Invalid interval type: bool. Expected str or int.")

    if isinstance(interval, (int, float)):
        seconds = int(interval)
    elif isinstance(interval, str):
        text = interval.lower().strip()
        if text.isdigit():
            seconds = int(text)
        else:
            match = re.match(r"^(\d+)\s*([smhd])$", text)
            if not match:
                raise ValueError(
                    f"Invalid interval format: '{interval}'. "
                    "Use format like '30s', '5m', '1h', or '1d'."
                )
            seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    else:
        raise ValueError(
            f"Invalid interval type: {type(interval).__name__}. Expected str or int."
        )

    if seconds <= 0:
        raise ValueError(f"Interval must be positive, got {interval!r}")
    return seconds


# Imports after parse_interval to avoid circular dependencies
from carddav_sync.daemon.scheduler import (  # noqa: E402
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonRunner,
    PIDFileError,
    PIDFileManager,
    RepeatingTimer,
    ScheduleIntervals,
    ScheduleStats,
    SyncSchedule,
)

__all__ = [
    "parse_interval",
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
