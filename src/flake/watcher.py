"""Filesystem watcher feeding change events into the accumulator.

Wraps a `watchdog` observer on the store root. Moves are split into a removal
and a creation, and events for files that have already vanished are reported
as removals. Directory events are expanded into events for the files inside:
a directory deleted or moved away as one unit yields no per-file events.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .changes import ChangeEvent, ChangeKind
from .constants import APP_NAME, DEFAULT_IGNORES, VCS_DIRS
from .retry import RetryPolicy

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(APP_NAME)


class WatchChannelFailure(RuntimeError):
    """The notification channel died and could not be re-established."""


class IgnorePatterns:
    """Decides which paths under the root are never reported."""

    def __init__(self, patterns: list[str] | None = None) -> None:
        self._patterns = list(DEFAULT_IGNORES)
        if patterns:
            self._patterns.extend(patterns)

    def should_ignore(self, path: Path, root: Path) -> bool:
        """Check if a path should be ignored.

        Args:
            path: Absolute path to check.
            root: Watched root directory.

        Returns:
            True for VCS metadata, paths outside the root, and pattern matches.
        """
        try:
            rel = path.relative_to(root)
        except ValueError:
            return True

        if any(part in VCS_DIRS for part in rel.parts):
            return True

        rel_str = rel.as_posix()
        for pattern in self._patterns:
            if fnmatch.fnmatch(rel_str, pattern) or fnmatch.fnmatch(path.name, pattern):
                return True
        return False


def _decode(path: str | bytes | os.PathLike) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return os.fspath(path)


class ChangeEventHandler(FileSystemEventHandler):
    """Translates watchdog events into ChangeEvents.

    Directory events are expanded: a created or moved-in directory is walked
    for its files, and a deleted or moved-out directory is resolved to the
    files the store tracks under it through `list_tracked`.
    """

    def __init__(
        self,
        root: Path,
        on_event: Callable[[ChangeEvent], None],
        ignore: IgnorePatterns,
        list_tracked: Callable[[Path], list[Path]] | None = None,
    ) -> None:
        super().__init__()
        self._root = root
        self._on_event = on_event
        self._ignore = ignore
        self._list_tracked = list_tracked

    def _emit(self, raw_path: str | bytes | os.PathLike, kind: ChangeKind) -> None:
        path = Path(os.path.abspath(_decode(raw_path)))
        if self._ignore.should_ignore(path, self._root):
            return

        if kind is not ChangeKind.REMOVED and not os.path.lexists(path):
            # Vanished between notification and now.
            kind = ChangeKind.REMOVED

        try:
            self._on_event(ChangeEvent(path, kind))
        except Exception:
            logger.exception(f"WATCH ERROR: dropped event for {path}")

    def _emit_tree_created(self, raw_path: str | bytes) -> None:
        top = Path(os.path.abspath(_decode(raw_path)))
        if self._ignore.should_ignore(top, self._root):
            return
        for dirpath, dirnames, filenames in os.walk(top):
            dirnames[:] = [d for d in dirnames if d not in VCS_DIRS]
            for name in filenames:
                self._emit(Path(dirpath) / name, ChangeKind.CREATED)

    def _emit_tree_removed(self, raw_path: str | bytes) -> None:
        top = Path(os.path.abspath(_decode(raw_path)))
        if self._list_tracked is None or self._ignore.should_ignore(top, self._root):
            return
        try:
            tracked = self._list_tracked(top)
        except Exception:
            logger.exception(f"WATCH ERROR: could not list files removed with {top}")
            return
        for path in tracked:
            self._emit(path, ChangeKind.REMOVED)

    def on_created(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileCreatedEvent):
            self._emit(event.src_path, ChangeKind.CREATED)
        elif isinstance(event, DirCreatedEvent):
            self._emit_tree_created(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileModifiedEvent):
            self._emit(event.src_path, ChangeKind.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileDeletedEvent):
            self._emit(event.src_path, ChangeKind.REMOVED)
        elif isinstance(event, DirDeletedEvent):
            self._emit_tree_removed(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileMovedEvent):
            self._emit(event.src_path, ChangeKind.REMOVED)
            self._emit(event.dest_path, ChangeKind.CREATED)
        elif isinstance(event, DirMovedEvent):
            self._emit_tree_removed(event.src_path)
            self._emit_tree_created(event.dest_path)


class FileWatcher:
    """Watches the store tree and reports every file change.

    The observer runs on its own thread. `ensure_alive` is polled from the
    sync thread to restart a dead observer, giving up with
    `WatchChannelFailure` after `max_restarts` consecutive failures.
    """

    def __init__(
        self,
        root: Path,
        on_event: Callable[[ChangeEvent], None],
        ignore: list[str] | None = None,
        max_restarts: int = 5,
        restart_policy: RetryPolicy | None = None,
        observer_factory: Callable[[], BaseObserver] = Observer,
        list_tracked: Callable[[Path], list[Path]] | None = None,
        on_restart: Callable[[], None] | None = None,
    ) -> None:
        """Initialize the file watcher.

        Args:
            root: Directory to watch recursively.
            on_event: Callback invoked on the observer thread for each change.
            ignore: Additional glob patterns to ignore.
            max_restarts: Consecutive restart failures tolerated.
            restart_policy: Backoff between restart attempts.
            observer_factory: Builds the watchdog observer.
            list_tracked: Lists tracked files under a directory that vanished.
            on_restart: Called after a restart to pick up changes made
                while no observer was running.
        """
        self._root = Path(root).resolve()
        if not self._root.is_dir():
            raise ValueError(f"Watch path must be a directory: {root}")

        self._handler = ChangeEventHandler(
            self._root, on_event, IgnorePatterns(ignore), list_tracked
        )
        self._on_restart = on_restart
        self._observer_factory = observer_factory
        self._observer: BaseObserver | None = None
        self._max_restarts = max_restarts
        self._restart_policy = restart_policy or RetryPolicy(
            max_attempts=max_restarts, initial_backoff=1.0, max_backoff=30.0
        )
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        """Get the watched directory path."""
        return self._root

    @property
    def is_alive(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def _spawn(self) -> None:
        observer = self._observer_factory()
        observer.schedule(self._handler, str(self._root), recursive=True)
        observer.start()
        self._observer = observer

    def start(self) -> None:
        """Start watching for changes."""
        with self._lock:
            if self.is_alive:
                return
            self._spawn()
        logger.info(f"Watching {self._root} for changes.")

    def stop(self) -> None:
        """Stop watching for changes."""
        with self._lock:
            observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        if observer.is_alive():
            observer.join(timeout=5.0)

    def ensure_alive(self) -> None:
        """Restarts the observer if its thread has died.

        After a successful restart `on_restart` is called so the caller can
        rescan the tree.

        Raises:
            WatchChannelFailure: If every restart attempt failed.
        """
        with self._lock:
            if self._observer is None or self._observer.is_alive():
                return

            logger.warning(f"WATCH: notification channel for {self._root} died. Restarting.")

            def restart() -> None:
                self._spawn()
                if not self._observer.is_alive():
                    raise OSError("observer exited immediately")

            try:
                self._restart_policy.call(restart, retry_on=(Exception,))
            except Exception as e:
                raise WatchChannelFailure(
                    f"Could not re-establish file watching on {self._root} "
                    f"after {self._max_restarts} restarts: {e}"
                ) from e
        logger.info(f"WATCH: notification channel for {self._root} restored.")
        if self._on_restart is not None:
            # Edits made while unobserved produced no events.
            self._on_restart()

    def __enter__(self) -> FileWatcher:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()
