"""
Logging configuration module for carddav_sync.

Provides centralized logging configuration with support for:
- Console and file logging
- Configurable log levels via environment variables
- A dedicated audit log for destructive sync decisions
- Colored console output (when supported)
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from carddav_sync.utils.paths import LOGS_DIR_NAME, config_path

# Simplified format for console
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# Verbose format (includes source location)
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Audit log format: one line per deletion, force-push or safety abort
AUDIT_LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s"

# Environment variable names
ENV_LOG_LEVEL = "CARDDAV_SYNC_LOG_LEVEL"
ENV_DEBUG = "CARDDAV_SYNC_DEBUG"
ENV_LOG_FILE = "CARDDAV_SYNC_LOG_FILE"

ROOT_LOGGER_NAME = "carddav_sync"
AUDIT_LOGGER_NAME = "carddav_sync.audit"

LOG_FILE_PREFIX = "carddav_sync_"
AUDIT_FILE_PREFIX = "audit_"


def default_log_dir() -> Path:
    """Get the default logs directory inside the configuration directory."""
    return config_path(LOGS_DIR_NAME)


class ColoredFormatter(logging.Formatter):
    """
    A logging formatter that adds ANSI color codes to log messages.

    Colors are only applied when output is to a terminal that supports them.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        """Check if the terminal supports colors."""
        if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
            return False

        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False

        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with optional colors."""
        record = logging.makeLogRecord(record.__dict__)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"
            record.msg = f"{color}{record.msg}{self.RESET}"

        return super().format(record)


def get_log_level_from_env() -> int:
    """
    Get the logging level from environment variables.

    CARDDAV_SYNC_DEBUG wins over CARDDAV_SYNC_LOG_LEVEL.

    Returns:
        Logging level constant (e.g., logging.DEBUG, logging.INFO)
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    level_str = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    return level_map.get(level_str, logging.INFO)


def _daily_log_name(prefix: str) -> str:
    return f"{prefix}{datetime.now().strftime('%Y%m%d')}.log"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Get the log file path from environment or default location.

    Args:
        log_dir: Directory to place the daily log file in. Defaults to
                 the logs directory under the configuration directory.

    Returns:
        Path to log file, or None if file logging is disabled
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    return (log_dir or default_log_dir()) / _daily_log_name(LOG_FILE_PREFIX)


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure logging for the carddav_sync application.

    Sets up console and file handlers on the ``carddav_sync`` logger and
    a daily audit file for the ``carddav_sync.audit`` child logger.

    Args:
        level: Logging level. If None, determined from environment variables.
        verbose: If True, use verbose format and DEBUG level.
        log_dir: Directory for log files. If provided, overrides default.
        log_file: Path to log file. If None, uses log_dir or default.
        enable_file_logging: If False, disable file logging entirely.
        use_colors: If True, use colored output for console (when supported).

    Returns:
        The root logger for carddav_sync

    Example:
        setup_logging(verbose=True)
        setup_logging(log_dir=Path('/var/log/carddav-sync'))
        setup_logging(enable_file_logging=False)
    """
    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)

    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        file_path = log_file if log_file else get_log_file_path(log_dir)

        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)

                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(
                    logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT)
                )
                logger.addHandler(file_handler)

                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

            setup_audit_logger(log_dir=file_path.parent)

    global _configured_log_dir
    if log_dir:
        _configured_log_dir = log_dir
    elif log_file:
        _configured_log_dir = log_file.parent
    else:
        _configured_log_dir = None

    return logger


_configured_log_dir: Optional[Path] = None


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Clean up old log files, keeping only the most recent ones.

    Removes old carddav_sync_*.log and audit_*.log files, keeping
    ``keep_count`` of each.

    Args:
        log_dir: Directory containing log files. If None, uses configured
                 directory or the default.
        keep_count: Number of log files to keep for each type. 0 disables
                    cleanup.

    Returns:
        Number of files deleted.
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or _configured_log_dir or default_log_dir()
    if not logs_dir.exists():
        return 0

    deleted_count = 0
    for prefix in (LOG_FILE_PREFIX, AUDIT_FILE_PREFIX):
        logs = sorted(
            logs_dir.glob(f"{prefix}*.log"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old_log in logs[keep_count:]:
            try:
                old_log.unlink()
                deleted_count += 1
            except OSError:
                pass  # Best effort

    return deleted_count


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module within the carddav_sync hierarchy.

    Args:
        name: Name of the module (typically __name__)

    Returns:
        Logger instance for the module
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)


def get_audit_log_path(log_dir: Optional[Path] = None) -> Path:
    """Get the path of today's audit log file."""
    logs_dir = log_dir or _configured_log_dir or default_log_dir()
    return logs_dir / _daily_log_name(AUDIT_FILE_PREFIX)


def setup_audit_logger(
    log_file: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    level: int = logging.INFO,
) -> logging.Logger:
    """
    Set up the dedicated audit logger.

    The audit log records every decision that removes or overwrites data:
    local deletions from server-side deletions, orphan deletions on the
    server, force-pushes of shared contacts and safety aborts. Records
    also propagate to the main ``carddav_sync`` logger.

    Args:
        log_file: Optional explicit path for the audit file.
        log_dir: Directory for the daily audit file when log_file is None.
        level: Logging level (default INFO)

    Returns:
        The audit logger
    """
    logger = logging.getLogger(AUDIT_LOGGER_NAME)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    file_path = log_file if log_file else get_audit_log_path(log_dir)

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(file_path, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(AUDIT_LOG_FORMAT, DATE_FORMAT))
        logger.addHandler(file_handler)
    except OSError as e:
        logging.getLogger(ROOT_LOGGER_NAME).warning(
            f"Could not create audit log file {file_path}: {e}"
        )

    return logger


def get_audit_logger() -> logging.Logger:
    """
    Get the audit logger instance.

    Without setup_audit_logger() the records only reach the main logger.
    """
    return logging.getLogger(AUDIT_LOGGER_NAME)


__all__ = [
    "setup_logging",
    "get_logger",
    "cleanup_old_logs",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
    "default_log_dir",
    "setup_audit_logger",
    "get_audit_logger",
    "get_audit_log_path",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
    "AUDIT_LOG_FORMAT",
]
