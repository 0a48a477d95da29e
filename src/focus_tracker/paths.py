"""Locations of the tracker's database and log files."""

from __future__ import annotations

from pathlib import Path

from platformdirs import PlatformDirs


APP_NAME = "FocusTracker"

_DIRS = PlatformDirs(appname=APP_NAME, appauthor=False, roaming=True)


def get_data_dir() -> Path:
    """Directory holding the session database; created on first use."""
    path = Path(_DIRS.user_data_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_db_path() -> Path:
    return get_data_dir() / "sessions.sqlite3"


def get_log_path() -> Path:
    log_dir = Path(_DIRS.user_log_path)
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "tracker.log"
