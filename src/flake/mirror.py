import filecmp
import logging
import os
import shutil
from pathlib import Path

from .changes import ChangeAccumulator, ChangeEvent, ChangeKind
from .constants import APP_NAME, VCS_DIRS

logger = logging.getLogger(APP_NAME)


class HomeMirror:
    """Copies the live $HOME copy of every tracked dotfile into the store.

    The store mirrors the home directory layout: `<store>/.vimrc` tracks
    `~/.vimrc`, `<store>/.config/git/config` tracks `~/.config/git/config`.

    Attributes:
        store (Path): Root of the store working tree.
        home (Path): Home directory the store mirrors.
        remove_missing (bool): Delete store files whose home copy is gone.
    """

    def __init__(self, store: Path, home: Path | None = None, remove_missing: bool = False):
        self.store = Path(store).resolve()
        self.home = Path(home) if home else Path.home()
        self.remove_missing = remove_missing

    def tracked_files(self) -> list[Path]:
        """Lists every file in the store outside of VCS metadata, relative to it."""
        found = []
        for dirpath, dirnames, filenames in os.walk(self.store):
            dirnames[:] = [d for d in dirnames if d not in VCS_DIRS]
            for name in filenames:
                found.append((Path(dirpath) / name).relative_to(self.store))
        return sorted(found)

    def refresh(self, accumulator: ChangeAccumulator) -> int:
        """Pulls home versions into the store and records what changed.

        Args:
            accumulator (ChangeAccumulator): Receives one event per updated file.

        Returns:
            int: Number of store files changed.
        """
        changed = 0
        for rel in self.tracked_files():
            source = self.home / rel
            target = self.store / rel
            try:
                if source.is_file():
                    if filecmp.cmp(source, target, shallow=False):
                        continue
                    shutil.copy2(source, target)
                    kind = ChangeKind.MODIFIED
                elif self.remove_missing and not source.exists():
                    target.unlink()
                    kind = ChangeKind.REMOVED
                else:
                    continue
            except OSError as e:
                logger.warning(f"[WARNING] Unable to sync file {rel}: {e}")
                continue

            accumulator.record(ChangeEvent(target, kind))
            changed += 1

        if changed:
            logger.info(f"MIRROR: pulled {changed} file(s) from {self.home}.")
        return changed
