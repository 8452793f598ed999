"""
Log directory and log file management.

Each server start writes to a new timestamped file
(``glitch-logs-YYYY-MM-DD-HH-MM-SS.log``) that is rotated by size; old
files are cleaned up on startup.
"""

import logging
import os
import time
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_LOGS_DIR = "~/.glitch/logs"

LOGS_DIR_ENV_VAR = "GLITCH_LOGS_DIR"

LOG_FILE_PREFIX = "glitch-logs-"
LOG_FILE_TIMESTAMP_FORMAT = "%Y-%m-%d-%H-%M-%S"


def get_logs_dir() -> Path:
    """
    Get the logs directory path.

    Priority order:
    1. GLITCH_LOGS_DIR environment variable
    2. Default: ~/.glitch/logs

    Returns:
        Path: Absolute path to the logs directory
    """
    env_dir = os.environ.get(LOGS_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return Path(DEFAULT_LOGS_DIR).expanduser().resolve()


def ensure_logs_dir() -> Path:
    """Create the logs directory if needed and return it."""
    logs_dir = get_logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def get_current_log_file() -> Path:
    """Path of a new log file named after the current time."""
    timestamp = datetime.now().strftime(LOG_FILE_TIMESTAMP_FORMAT)
    return get_logs_dir() / f"{LOG_FILE_PREFIX}{timestamp}.log"


def get_most_recent_log_file() -> Path | None:
    """
    Find the most recent base log file.

    Rotated files (``.log.1``, ``.log.2``, ...) are ignored. Names sort
    chronologically because of the timestamp format.

    Returns:
        Path of the newest log file, or None if there is none.
    """
    logs_dir = get_logs_dir()
    if not logs_dir.exists():
        return None
    log_files = sorted(logs_dir.glob(f"{LOG_FILE_PREFIX}*.log"))
    if not log_files:
        return None
    return log_files[-1]


def cleanup_old_logs(max_age_days: int = 1) -> None:
    """
    Delete log files (including rotated ones) not modified for
    ``max_age_days`` days.
    """
    logs_dir = get_logs_dir()
    if not logs_dir.exists():
        return

    cutoff = time.time() - max_age_days * 24 * 60 * 60
    deleted = 0
    for log_file in logs_dir.glob(f"{LOG_FILE_PREFIX}*.log*"):
        try:
            if log_file.stat().st_mtime < cutoff:
                log_file.unlink()
                deleted += 1
        except OSError as e:
            logger.warning(f"Failed to delete old log file {log_file}: {e}")

    if deleted:
        logger.info(
            f"Cleaned up {deleted} old log file(s) older than {max_age_days} day(s)"
        )
