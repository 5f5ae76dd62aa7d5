"""The sync cycle: drain pending changes, stage, commit once, push.

A cycle never raises for repository failures. Every outcome, including a
no-op, is logged and returned as a `SyncCycle`. When a cycle fails after
draining, the drained change-set goes back into the accumulator so the next
cycle retries the same paths.
"""

import enum
import logging
import re
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .changes import ChangeAccumulator, ChangeEvent, ChangeKind
from .constants import APP_NAME
from .credentials import MissingCredential, SecretStore
from .git_wrapper import (
    GitError,
    MergeConflict,
    NetworkError,
    NonFastForwardError,
    PushError,
    StageError,
    StageOp,
)
from .mirror import HomeMirror
from .retry import RetryPolicy
from .system import SystemStrategy, get_hostname

logger = logging.getLogger(APP_NAME)

# Subject of the commits `build_commit_message` produces.
SYNC_SUBJECT = re.compile(r"^Update \d+ files? \(")


class Trigger(enum.Enum):
    """What started a sync cycle."""

    TIMER = "timer"
    MANUAL = "manual"
    STARTUP = "startup"


class Outcome(enum.Enum):
    SUCCESS = "success"
    NOOP = "noop"
    FAILED = "failed"


class FailureReason(enum.Enum):
    STAGE = "stage"
    COMMIT = "commit"
    NETWORK = "network"
    CONFLICT = "conflict"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass
class SyncCycle:
    """Record of one sync cycle, kept for logging only.

    Attributes:
        trigger (Trigger): What started the cycle.
        started_at (float): Unix timestamp at the start of the cycle.
        change_set (dict[Path, ChangeKind]): The drained snapshot.
        outcome (Outcome | None): Terminal result, None while running.
        reason (FailureReason | None): Why a FAILED cycle failed.
        detail (str): Human-readable explanation of the outcome.
        commit (str | None): SHA-1 of the commit pushed or left outstanding.
        finished_at (float | None): Unix timestamp once the outcome is set.
    """

    trigger: Trigger
    started_at: float = field(default_factory=time.time)
    change_set: dict[Path, ChangeKind] = field(default_factory=dict)
    outcome: Outcome | None = None
    reason: FailureReason | None = None
    detail: str = ""
    commit: str | None = None
    finished_at: float | None = None

    def finish(
        self, outcome: Outcome, detail: str = "", reason: FailureReason | None = None
    ) -> "SyncCycle":
        self.outcome = outcome
        self.reason = reason
        self.detail = detail
        self.finished_at = time.time()
        return self


class RepositoryGateway(Protocol):
    """Version-control operations the engine depends on."""

    def stage(self, path: Path, op: StageOp) -> None: ...

    def has_staged_changes(self) -> bool: ...

    def commit(self, message: str) -> str: ...

    def amend(self, message: str) -> str: ...

    def push(self, token: str | None = None) -> None: ...

    def integrate(self, token: str | None = None) -> None: ...

    def dirty_paths(self) -> list[tuple[Path, bool]]: ...

    def ahead_count(self) -> int: ...

    def behind_count(self) -> int: ...

    def head_subject(self) -> str: ...

    def fetch(self, token: str | None = None) -> None: ...


def build_commit_message(change_set: dict[Path, ChangeKind], root: Path | None = None) -> str:
    """Summarizes a change-set as a commit message.

    Args:
        change_set (dict[Path, ChangeKind]): The paths in the commit.
        root (Path | None): Store root, used to shorten listed paths.

    Returns:
        str: A subject like 'Update 3 files (1 created, 2 modified)' followed
             by one line per path.
    """
    counts = Counter(kind for kind in change_set.values())
    parts = [f"{counts[kind]} {kind.value}" for kind in ChangeKind if counts[kind]]
    noun = "file" if len(change_set) == 1 else "files"
    subject = f"Update {len(change_set)} {noun} ({', '.join(parts)})"

    lines = []
    for path, kind in sorted(change_set.items(), key=lambda item: str(item[0])):
        shown = path
        if root is not None:
            try:
                shown = path.relative_to(root)
            except ValueError:
                pass
        lines.append(f"{kind.value}: {shown.as_posix()}")

    return f"{subject}\n\nSynced from {get_hostname()}.\n\n" + "\n".join(lines)


class SyncEngine:
    """Folds pending changes into one commit per cycle and pushes it.

    Holds at most one outstanding unpushed commit: when a push fails the
    commit stays local and the next cycle amends it instead of stacking
    another one on top.
    """

    def __init__(
        self,
        accumulator: ChangeAccumulator,
        repo: RepositoryGateway,
        retry_policy: RetryPolicy | None = None,
        secrets: SecretStore | None = None,
        mirror: HomeMirror | None = None,
        notifier: SystemStrategy | None = None,
        root: Path | None = None,
        history_size: int = 50,
    ):
        """Initializes the engine.

        Args:
            accumulator (ChangeAccumulator): Source of pending changes.
            repo (RepositoryGateway): Version-control gateway for the store.
            retry_policy (RetryPolicy | None): Push retry schedule for network errors.
            secrets (SecretStore | None): Token source; None for remotes that
                                          authenticate without a token (SSH).
            mirror (HomeMirror | None): Pulls $HOME copies in before draining.
            notifier (SystemStrategy | None): Surfaces conflicts to the operator.
            root (Path | None): Store root, used in commit messages.
            history_size (int): Number of finished cycles kept in `history`.
        """
        self.accumulator = accumulator
        self.repo = repo
        self.retry_policy = retry_policy or RetryPolicy()
        self.secrets = secrets
        self.mirror = mirror
        self.notifier = notifier or SystemStrategy()
        self.root = root
        self.history: deque[SyncCycle] = deque(maxlen=history_size)
        self.outstanding_commit: str | None = None
        self._amend_outstanding = True

    def rescan(self) -> int:
        """Records every path that differs from HEAD as pending.

        Called after the watcher was down, when edits may have gone unseen.
        Errors are logged; the next rescan or filesystem event retries.

        Returns:
            int: Number of dirty paths recorded.
        """
        try:
            return self._record_dirty()
        except GitError as e:
            logger.error(f"RESCAN: could not read store status: {e}")
            return 0

    def _record_dirty(self) -> int:
        dirty = self.repo.dirty_paths()
        for path, deleted in dirty:
            kind = ChangeKind.REMOVED if deleted else ChangeKind.MODIFIED
            self.accumulator.record(ChangeEvent(path, kind))
        return len(dirty)

    def reconcile(self) -> int:
        """Recovers state left by a previous run and catches up with the remote.

        Rebases onto commits other machines pushed meanwhile, records every
        path that differs from HEAD as pending and adopts an unpushed local
        commit as the outstanding one. Only a commit this daemon made is
        later amended; any other unpushed commit is pushed as it is.

        Returns:
            int: Number of dirty paths recorded.

        Raises:
            MissingCredential: If the remote needs a token and none is stored.
        """
        self._catch_up()

        count = self._record_dirty()
        if self.repo.ahead_count() > 0:
            self.outstanding_commit = "HEAD"
            subject = self.repo.head_subject()
            self._amend_outstanding = bool(SYNC_SUBJECT.match(subject))
            if self._amend_outstanding:
                logger.info("RECOVER: found an unpushed commit, it will be pushed next cycle.")
            else:
                logger.warning(
                    f"RECOVER: unpushed commit '{subject}' was not made by {APP_NAME}; "
                    "it will be pushed unchanged and new changes committed on top."
                )
        if count:
            logger.info(f"RECOVER: {count} uncommitted change(s) queued for sync.")
        return count

    def _catch_up(self) -> None:
        token = self.secrets.require_token() if self.secrets is not None else None
        try:
            self.repo.fetch(token=token)
            behind = self.repo.behind_count()
            if behind:
                logger.info(f"RECOVER: remote is {behind} commit(s) ahead, integrating.")
                self.repo.integrate(token=token)
        except MergeConflict as e:
            self._surface_conflict(e)
        except GitError as e:
            logger.warning(f"RECOVER: could not update from the remote: {e}")

    def run_cycle(self, trigger: Trigger = Trigger.TIMER) -> SyncCycle:
        """Runs one drain, stage, commit, push cycle.

        Args:
            trigger (Trigger): What started the cycle.

        Returns:
            SyncCycle: The finished cycle record.

        Raises:
            MissingCredential: If the remote needs a token and none is stored.
        """
        if self.mirror is not None:
            self.mirror.refresh(self.accumulator)

        cycle = SyncCycle(trigger=trigger, change_set=self.accumulator.drain())
        try:
            self._run(cycle)
        except MissingCredential:
            self.accumulator.restore(cycle.change_set)
            cycle.finish(Outcome.FAILED, "missing access token")
            self._log(cycle)
            raise
        except Exception as e:
            logger.exception("CRITICAL: unexpected error during sync cycle")
            cycle.finish(Outcome.FAILED, str(e), FailureReason.ERROR)

        if cycle.outcome is Outcome.FAILED:
            self.accumulator.restore(cycle.change_set)
        self._log(cycle)
        return cycle

    def _run(self, cycle: SyncCycle) -> None:
        snapshot = cycle.change_set
        if not snapshot and self.outstanding_commit is None:
            cycle.finish(Outcome.NOOP, "no changes")
            return

        # 1. Stage.
        try:
            for path, kind in snapshot.items():
                op = StageOp.DELETE if kind is ChangeKind.REMOVED else StageOp.ADD
                self.repo.stage(path, op)
        except StageError as e:
            cycle.finish(Outcome.FAILED, str(e), FailureReason.STAGE)
            return

        # 2. Commit (or fold into the outstanding one).
        try:
            if snapshot and self.repo.has_staged_changes():
                message = build_commit_message(snapshot, self.root)
                if self.outstanding_commit is not None and self._amend_outstanding:
                    self.outstanding_commit = self.repo.amend(message)
                else:
                    self.outstanding_commit = self.repo.commit(message)
                    self._amend_outstanding = True
            elif self.outstanding_commit is None:
                cycle.finish(Outcome.NOOP, "changes already match the last commit")
                return
        except GitError as e:
            cycle.finish(Outcome.FAILED, str(e), FailureReason.COMMIT)
            return
        cycle.commit = self.outstanding_commit

        # 3. Push.
        token = self.secrets.require_token() if self.secrets is not None else None
        try:
            self._push(token)
        except MergeConflict as e:
            self._surface_conflict(e)
            cycle.finish(Outcome.FAILED, str(e), FailureReason.CONFLICT)
            return
        except NonFastForwardError as e:
            cycle.finish(
                Outcome.FAILED, f"remote still diverged: {e}", FailureReason.CONFLICT
            )
            return
        except NetworkError as e:
            cycle.finish(Outcome.FAILED, str(e), FailureReason.NETWORK)
            return
        except PushError as e:
            cycle.finish(Outcome.FAILED, str(e), FailureReason.REJECTED)
            return
        except GitError as e:
            cycle.finish(Outcome.FAILED, str(e), FailureReason.ERROR)
            return

        self.outstanding_commit = None
        cycle.finish(Outcome.SUCCESS, f"pushed {len(snapshot)} change(s)")

    def _push(self, token: str | None) -> None:
        """Pushes with retries, integrating the remote once if it has diverged."""

        def push() -> None:
            self.repo.push(token=token)

        try:
            self.retry_policy.call(push, retry_on=(NetworkError,))
            return
        except NonFastForwardError:
            logger.info("Remote has diverged, integrating before retrying the push.")

        self.retry_policy.call(
            lambda: self.repo.integrate(token=token), retry_on=(NetworkError,)
        )
        self.retry_policy.call(push, retry_on=(NetworkError,))

    def _surface_conflict(self, error: MergeConflict) -> None:
        paths = ", ".join(error.paths) or "unknown paths"
        logger.error(
            f"CONFLICT: local and remote edits collide in {paths}. "
            "Local changes are kept; resolve the conflict in the store manually."
        )
        self.notifier.notify("Dotfile sync conflict", f"Resolve manually: {paths}")

    def _log(self, cycle: SyncCycle) -> None:
        self.history.append(cycle)
        count = len(cycle.change_set)
        if cycle.outcome is Outcome.SUCCESS:
            logger.info(f"SYNC {cycle.trigger.value}: success, {cycle.detail}.")
        elif cycle.outcome is Outcome.NOOP:
            logger.info(f"SYNC {cycle.trigger.value}: nothing to do ({cycle.detail}).")
        else:
            reason = cycle.reason.value if cycle.reason else "error"
            logger.error(
                f"SYNC {cycle.trigger.value}: failed ({reason}), "
                f"{count} change(s) kept for retry: {cycle.detail}"
            )
