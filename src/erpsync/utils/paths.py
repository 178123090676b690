"""File path resolution using platformdirs.

The database and config default to the platform user data directory:
  macOS: ~/Library/Application Support/erpsync/
  Linux: ~/.local/share/erpsync/
  Windows: %LOCALAPPDATA%/erpsync/
"""

from pathlib import Path

import platformdirs

APP_NAME = "erpsync"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB)."""
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_config_dir() -> Path:
    """Return the per-user configuration directory."""
    return Path(platformdirs.user_config_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "erpsync.db"


def ensure_data_dir() -> Path:
    """Create the data directory if missing and return it."""
    data_dir = get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir
