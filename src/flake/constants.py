import os
from pathlib import Path

"""Global constants and path definitions for flake.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, and the defaults shared by the daemon and the CLI.
"""

# --- Identity ---
APP_NAME = "flake"
"""str: The human-readable application name (also the logger name)."""

KEYRING_SERVICE = "flake"
"""str: The keyring service under which the access token is stored."""

KEYRING_ENTRY = "github-access-token"
"""str: The keyring entry name for the access token."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "flake"
"""Path: The directory for runtime state data (logs, pid file)."""

# Ensure state directory exists immediately upon module import.
STATE_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

PID_FILE = STATE_DIR / "daemon.pid"
"""Path: The file path storing the daemon's process ID."""

CONFIG_DIR: Path = Path.home() / ".config/flake"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

STORE_NAME = ".snowflakes"
"""str: Directory name (under $HOME) of the local dotfile store."""

# --- Sync ---
DEFAULT_INTERVAL = 1800
"""int: Seconds between scheduled sync cycles (30 minutes)."""

DEFAULT_BRANCH = "master"
"""str: Remote branch the store is pushed to."""

VCS_DIRS = [".git"]
"""list[str]: Path components that are never reported as user changes."""

DEFAULT_IGNORES = [
    "*.swp",
    "*.swx",
    "*~",
    ".#*",
    "4913",
    ".DS_Store",
]
"""list[str]: Editor scratch files that are never synchronized."""
