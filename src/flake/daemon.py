import atexit
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from types import FrameType

from rich.console import Console

from .changes import ChangeAccumulator
from .config import Config
from .constants import APP_NAME, LOG_FILE, PID_FILE
from .credentials import MissingCredential, SecretStore
from .engine import SyncCycle, SyncEngine, Trigger
from .git_wrapper import GitError, GitRepo
from .mirror import HomeMirror
from .retry import RetryPolicy
from .scheduler import SyncScheduler
from .system import get_system
from .watcher import FileWatcher, WatchChannelFailure

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)

err_console = Console(stderr=True)


class StoreError(RuntimeError):
    """The local store could not be opened or created."""


def setup_logging(interactive: bool, max_log_size: int = 5 * 1024 * 1024) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout only. If False, logs to
                            stderr and to the rotating daemon log file.
        max_log_size (int): Bytes before the log file rotates.
    """
    if logger.handlers:
        return

    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # Always log to a stream (captured by systemd/launchd when detached).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=max_log_size,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def open_store(config: Config) -> GitRepo:
    """Opens the local store, cloning the remote on first use.

    Args:
        config (Config): The loaded configuration.

    Returns:
        GitRepo: Gateway over the store working tree.

    Raises:
        StoreError: If the store path is a file, or no remote is configured
                    for a store that does not exist yet.
        GitError: If cloning fails.
    """
    store = config.core.store_path.resolve()
    kwargs = {
        "remote_name": config.core.remote_name,
        "branch": config.core.branch,
        "username": config.core.username,
    }

    if store.exists():
        if store.is_file():
            raise StoreError(f"{store} is a file!")
        try:
            return GitRepo(store, **kwargs)
        except ValueError as e:
            raise StoreError(str(e)) from e

    if not config.core.remote_url:
        raise StoreError(
            "repository url not provided, use `git config --global --add "
            "github.dotfiles URL` to set a default repository"
        )
    logger.info(f"Cloning {config.core.remote_url} into {store}...")
    return GitRepo.clone(config.core.remote_url, store, **kwargs)


def build_engine(
    config: Config,
    repo: GitRepo,
    accumulator: ChangeAccumulator,
    secrets: SecretStore | None = None,
) -> SyncEngine:
    """Wires a SyncEngine from configuration.

    Args:
        config (Config): The loaded configuration.
        repo (GitRepo): Gateway over the store.
        accumulator (ChangeAccumulator): The shared pending change-set.
        secrets (SecretStore | None): Token source, used only for HTTPS remotes.

    Returns:
        SyncEngine: The configured engine.
    """
    policy = RetryPolicy(
        max_attempts=config.sync.push_attempts,
        initial_backoff=config.sync.initial_backoff,
        max_backoff=config.sync.max_backoff,
    )
    mirror = None
    if config.mirror.enabled:
        mirror = HomeMirror(repo.path, remove_missing=config.mirror.remove_missing)
    return SyncEngine(
        accumulator,
        repo,
        retry_policy=policy,
        secrets=(secrets or SecretStore()) if config.core.needs_token else None,
        mirror=mirror,
        notifier=get_system(),
        root=repo.path,
    )


def _write_pid_file() -> None:
    try:
        with open(PID_FILE, "w") as f:
            f.write(str(os.getpid()))

        # Ensure cleanup on exit.
        atexit.register(lambda: PID_FILE.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def read_daemon_pid() -> int | None:
    """Returns the PID of a running daemon, or None if none is alive."""
    if not PID_FILE.exists():
        return None
    try:
        pid = int(PID_FILE.read_text().strip())
        os.kill(pid, 0)
    except (ValueError, OSError):
        return None
    return pid


def request_sync() -> bool:
    """Asks a running daemon for an immediate cycle (SIGUSR1).

    Returns:
        bool: True if a daemon was signalled.
    """
    pid = read_daemon_pid()
    if pid is None:
        return False
    try:
        os.kill(pid, signal.SIGUSR1)
    except OSError as e:
        logger.warning(f"Could not signal daemon {pid}: {e}")
        return False
    return True


def run_once(config: Config) -> SyncCycle:
    """Runs a single reconcile-and-sync pass without watching.

    Used by `flake now` when no daemon is running. Changes are discovered from
    `git status` rather than from filesystem events.

    Args:
        config (Config): The loaded configuration.

    Returns:
        SyncCycle: The finished cycle.
    """
    repo = open_store(config)
    accumulator = ChangeAccumulator()
    engine = build_engine(config, repo, accumulator)
    engine.reconcile()
    return engine.run_cycle(Trigger.MANUAL)


def run(config: Config, stop: threading.Event | None = None) -> None:
    """Watches the store and syncs it on schedule until stopped.

    Args:
        config (Config): The loaded configuration.
        stop (threading.Event | None): Shutdown flag. SIGTERM and SIGINT set it.

    Raises:
        WatchChannelFailure: If file watching cannot be kept alive.
        MissingCredential: If an HTTPS remote has no stored token.
        StoreError: If the store cannot be opened.
    """
    stop = stop or threading.Event()
    repo = open_store(config)
    accumulator = ChangeAccumulator()
    engine = build_engine(config, repo, accumulator)

    # A push will need the token eventually; fail before watching anything.
    if engine.secrets is not None:
        engine.secrets.require_token()

    watcher = FileWatcher(
        repo.path,
        accumulator.record,
        ignore=config.watch.ignore,
        max_restarts=config.watch.max_restarts,
        restart_policy=RetryPolicy(
            max_attempts=config.watch.max_restarts,
            initial_backoff=config.watch.restart_backoff,
            max_backoff=30.0,
        ),
        list_tracked=repo.tracked_files,
        on_restart=engine.rescan,
    )
    scheduler = SyncScheduler(
        engine.run_cycle,
        interval=config.sync.interval,
        on_poll=watcher.ensure_alive,
    )

    def shutdown_handler(_signum: int, _frame: FrameType | None) -> None:
        stop.set()

    def sync_handler(_signum: int, _frame: FrameType | None) -> None:
        # Off the main thread: the handler may interrupt code holding the scheduler lock.
        threading.Thread(target=scheduler.trigger, daemon=True).start()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)
        signal.signal(signal.SIGUSR1, sync_handler)

    with watcher:
        engine.reconcile()
        if config.sync.sync_on_start:
            scheduler.fire(Trigger.STARTUP)
        scheduler.run(stop)


def main(config: Config | None = None, interactive: bool = True) -> None:
    """The foreground daemon entry point.

    Args:
        config (Config | None): Pre-loaded configuration. Loaded from disk if None.
        interactive (bool, optional): Log to stdout only when True.
    """
    config = config or Config.load()
    setup_logging(interactive, config.limits.max_log_size)
    _write_pid_file()

    try:
        run(config)
    except (WatchChannelFailure, MissingCredential, StoreError, GitError) as e:
        logger.critical(f"FATAL: {e}")
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main(interactive=False)
