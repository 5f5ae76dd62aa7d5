import logging
import re
import subprocess
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_BRANCH,
    DEFAULT_INTERVAL,
    STORE_NAME,
)

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | float | str) -> float:
    """Converts human-readable time strings (e.g., '1hr', '30m') to seconds."""
    if isinstance(value, (int, float)):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return num * multiplier[unit]


def require_positive(value: int | float) -> int | float:
    """Returns `value` unchanged if it is a number greater than zero."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"Expected a positive number, got {value!r}")
    return value


def read_git_config(key: str) -> str | None:
    """Reads a value from the user's global git configuration.

    Args:
        key (str): The dotted git config key (e.g. 'github.dotfiles').

    Returns:
        str | None: The configured value, or None if unset or git is missing.
    """
    try:
        res = subprocess.run(
            ["git", "config", "--global", "--get", key],
            capture_output=True,
            text=True,
        )
    except OSError as e:
        logger.debug(f"git config lookup for {key} failed: {e}")
        return None
    value = res.stdout.strip()
    return value if res.returncode == 0 and value else None


@dataclass
class CoreConfig:
    """Repository identity settings.

    Attributes:
        remote_url (str | None): URL of the remote dotfile repository.
        username (str | None): Account name used for token authentication.
        remote_name (str): The git remote the store pushes to.
        branch (str): The remote branch receiving sync commits.
        store_dir (str): Location of the local store working tree.
    """

    remote_url: str | None = None
    username: str | None = None
    remote_name: str = "origin"
    branch: str = DEFAULT_BRANCH
    store_dir: str = f"~/{STORE_NAME}"

    @property
    def store_path(self) -> Path:
        return Path(self.store_dir).expanduser()

    @property
    def needs_token(self) -> bool:
        """Whether pushes authenticate with the stored access token."""
        return bool(self.remote_url and self.remote_url.startswith("https://"))


@dataclass
class SyncConfig:
    """Sync cycle settings.

    Attributes:
        interval (float): Seconds between scheduled cycles.
        push_attempts (int): Push attempts per cycle on network failure.
        initial_backoff (float): First delay between push attempts.
        max_backoff (float): Upper bound on the delay between attempts.
        sync_on_start (bool): Whether to run a cycle as soon as the daemon starts.
    """

    interval: float = DEFAULT_INTERVAL
    push_attempts: int = 3
    initial_backoff: float = 2.0
    max_backoff: float = 60.0
    sync_on_start: bool = True


@dataclass
class WatchConfig:
    """Filesystem watcher settings.

    Attributes:
        ignore (list[str]): Glob patterns never reported (appended to defaults).
        max_restarts (int): Consecutive observer restarts before giving up.
        restart_backoff (float): First delay between observer restarts.
    """

    ignore: list[str] = field(default_factory=list)
    max_restarts: int = 5
    restart_backoff: float = 1.0


@dataclass
class MirrorConfig:
    """Home directory mirroring settings.

    Attributes:
        enabled (bool): Copy $HOME versions of tracked files into the store.
        remove_missing (bool): Delete store files that no longer exist in $HOME.
    """

    enabled: bool = False
    remove_missing: bool = False


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class Config:
    """Global configuration aggregator.

    Built once at startup and handed to each component; nothing re-reads it.

    Attributes:
        core (CoreConfig): Repository identity.
        sync (SyncConfig): Sync cycle behavior.
        watch (WatchConfig): Watcher behavior.
        mirror (MirrorConfig): Home mirroring behavior.
        limits (LimitsConfig): Resource limits.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    mirror: MirrorConfig = field(default_factory=MirrorConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    @classmethod
    def load(
        cls,
        path: Path | None = None,
        repository: str | None = None,
        interval: float | None = None,
    ) -> "Config":
        """Loads configuration from defaults, the TOML file, git config and overrides.

        Args:
            path (Path | None): Config file to read. Defaults to CONFIG_FILE.
            repository (str | None): Remote URL override (CLI `--repository`).
            interval (float | None): Interval override in seconds (CLI `--interval`).

        Returns:
            Config: The fully merged configuration object.
        """
        instance = cls()
        config_path = path or CONFIG_FILE
        if config_path.exists():
            instance._merge_from_file(config_path)

        # Fall back to the global git config keys (github.dotfiles, github.username).
        if not instance.core.remote_url:
            instance.core.remote_url = read_git_config("github.dotfiles")
        if not instance.core.username:
            instance.core.username = read_git_config("github.username")

        if repository:
            instance.core.remote_url = repository
        if interval is not None:
            instance.sync.interval = interval

        return instance

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if "core" in data:
                self.core = self._update_dataclass("core", self.core, data["core"])
            if "sync" in data:
                self.sync = self._update_dataclass("sync", self.sync, data["sync"])
            if "mirror" in data:
                self.mirror = self._update_dataclass(
                    "mirror", self.mirror, data["mirror"]
                )
            if "limits" in data:
                self.limits = self._update_dataclass(
                    "limits", self.limits, data["limits"]
                )
            if "watch" in data:
                # Extract ignore list to prevent it from being overwritten during dataclass update
                new_ignores = data["watch"].pop("ignore", [])
                self.watch = self._update_dataclass("watch", self.watch, data["watch"])
                if new_ignores:
                    self.watch.ignore.extend(new_ignores)
                    self.watch.ignore = list(dict.fromkeys(self.watch.ignore))

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except OSError as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k == "max_log_size":
                    filtered_updates[k] = parse_size(v)
                elif k in ["interval", "initial_backoff", "max_backoff", "restart_backoff"]:
                    filtered_updates[k] = require_positive(parse_time(v))
                elif k in ["push_attempts", "max_restarts"]:
                    filtered_updates[k] = int(require_positive(v))
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)
