"""flake: keep track of dotfiles.

This package provides a background daemon that watches a local dotfile store,
folds every change made during a sync interval into one commit, and pushes it
to a remote git repository.
"""

from . import (
    changes,
    cli,
    config,
    constants,
    credentials,
    daemon,
    engine,
    git_wrapper,
    mirror,
    retry,
    scheduler,
    system,
    watcher,
)

__all__ = [
    "changes",
    "cli",
    "config",
    "constants",
    "credentials",
    "daemon",
    "engine",
    "git_wrapper",
    "mirror",
    "retry",
    "scheduler",
    "system",
    "watcher",
]
