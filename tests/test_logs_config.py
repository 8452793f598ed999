"""Tests for log directory and log file management."""

import os
from datetime import datetime
from pathlib import Path

import pytest
from freezegun import freeze_time

from glitch.server.logs_config import (
    LOG_FILE_PREFIX,
    LOGS_DIR_ENV_VAR,
    cleanup_old_logs,
    ensure_logs_dir,
    get_current_log_file,
    get_logs_dir,
    get_most_recent_log_file,
)

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
def logs_dir(tmp_path, monkeypatch):
    path = tmp_path / "logs"
    monkeypatch.setenv(LOGS_DIR_ENV_VAR, str(path))
    return path


def touch(path: Path, age_hours: float = 0.0) -> Path:
    """Create ``path`` with a modification time ``age_hours`` before NOW."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("log line\n")
    mtime = NOW.timestamp() - age_hours * 3600
    os.utime(path, (mtime, mtime))
    return path


class TestLogsDir:
    def test_env_var_overrides_default(self, logs_dir):
        assert get_logs_dir() == logs_dir.resolve()

    def test_default_is_under_home(self, monkeypatch):
        monkeypatch.delenv(LOGS_DIR_ENV_VAR, raising=False)
        assert get_logs_dir() == (Path.home() / ".glitch" / "logs").resolve()

    def test_ensure_creates_directory(self, logs_dir):
        assert not logs_dir.exists()
        assert ensure_logs_dir() == logs_dir.resolve()
        assert logs_dir.is_dir()

    @freeze_time(NOW)
    def test_current_log_file_is_timestamped(self, logs_dir):
        path = get_current_log_file()

        assert path.parent == logs_dir.resolve()
        assert path.name == f"{LOG_FILE_PREFIX}2026-03-10-12-00-00.log"


class TestMostRecentLogFile:
    def test_missing_directory(self, logs_dir):
        assert get_most_recent_log_file() is None

    def test_empty_directory(self, logs_dir):
        logs_dir.mkdir()
        assert get_most_recent_log_file() is None

    def test_newest_base_file_wins(self, logs_dir):
        touch(logs_dir / f"{LOG_FILE_PREFIX}2026-03-09-23-59-59.log")
        newest = touch(logs_dir / f"{LOG_FILE_PREFIX}2026-03-10-08-15-00.log")
        touch(logs_dir / f"{LOG_FILE_PREFIX}2026-03-10-08-15-00.log.1")
        touch(logs_dir / "unrelated.log")

        assert get_most_recent_log_file() == newest.resolve()


class TestCleanupOldLogs:
    @freeze_time(NOW)
    def test_removes_old_base_and_rotated_files(self, logs_dir):
        old = touch(logs_dir / f"{LOG_FILE_PREFIX}2026-03-08-10-00-00.log", 50)
        old_rotated = touch(logs_dir / f"{LOG_FILE_PREFIX}2026-03-08-10-00-00.log.1", 49)
        fresh = touch(logs_dir / f"{LOG_FILE_PREFIX}2026-03-10-09-00-00.log", 3)

        cleanup_old_logs()

        assert not old.exists()
        assert not old_rotated.exists()
        assert fresh.exists()

    @freeze_time(NOW)
    def test_respects_max_age(self, logs_dir):
        two_days = touch(logs_dir / f"{LOG_FILE_PREFIX}2026-03-08-12-00-00.log", 48)
        six_days = touch(logs_dir / f"{LOG_FILE_PREFIX}2026-03-04-12-00-00.log", 144)

        cleanup_old_logs(max_age_days=5)

        assert two_days.exists()
        assert not six_days.exists()

    @freeze_time(NOW)
    def test_ignores_other_files(self, logs_dir):
        other = touch(logs_dir / "notes.txt", 500)

        cleanup_old_logs()

        assert other.exists()

    def test_missing_directory_is_noop(self, logs_dir):
        cleanup_old_logs()
        assert not logs_dir.exists()

    @freeze_time(NOW)
    def test_logs_count(self, logs_dir, caplog):
        touch(logs_dir / f"{LOG_FILE_PREFIX}2026-03-01-00-00-00.log", 200)
        touch(logs_dir / f"{LOG_FILE_PREFIX}2026-03-02-00-00-00.log", 180)

        with caplog.at_level("INFO", logger="glitch.server.logs_config"):
            cleanup_old_logs()

        assert "Cleaned up 2 old log file(s)" in caplog.text
