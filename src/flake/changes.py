"""Change events and the pending change-set shared by the watcher and the engine."""

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class ChangeKind(enum.Enum):
    """Kind of filesystem change observed for a path."""

    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChangeEvent:
    """A single observed change.

    Attributes:
        path (Path): Canonical absolute path of the changed file.
        kind (ChangeKind): What happened to it.
        observed_at (float): Unix timestamp of the observation.
    """

    path: Path
    kind: ChangeKind
    observed_at: float = field(default_factory=time.time)


class ChangeAccumulator:
    """Coalesces change events into a pending change-set keyed by path.

    The watcher thread calls `record` while the sync thread calls `drain` and
    `restore`. Every access to the pending map happens under one lock, so a
    drain hands over each recorded event exactly once.
    """

    def __init__(self) -> None:
        self._pending: dict[Path, ChangeKind] = {}
        self._lock = threading.Lock()

    def record(self, event: ChangeEvent) -> None:
        """Inserts or overwrites the pending entry for the event's path."""
        with self._lock:
            self._pending[event.path] = event.kind

    def drain(self) -> dict[Path, ChangeKind]:
        """Atomically returns the pending change-set and resets it to empty.

        Returns:
            dict[Path, ChangeKind]: Each touched path mapped to its last kind.
        """
        with self._lock:
            snapshot = self._pending
            self._pending = {}
        return snapshot

    def restore(self, snapshot: dict[Path, ChangeKind]) -> None:
        """Merges a drained snapshot back after a failed cycle.

        Paths recorded after the drain keep their newer kind.

        Args:
            snapshot (dict[Path, ChangeKind]): The change-set returned by `drain`.
        """
        if not snapshot:
            return
        with self._lock:
            merged = dict(snapshot)
            merged.update(self._pending)
            self._pending = merged
        logger.debug(f"Restored {len(snapshot)} pending change(s) for retry.")

    def pending(self) -> dict[Path, ChangeKind]:
        """Returns a copy of the pending change-set without draining it."""
        with self._lock:
            return dict(self._pending)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
