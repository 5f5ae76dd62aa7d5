import base64
import enum
import logging
import os
import subprocess
from pathlib import Path

from .constants import APP_NAME, DEFAULT_BRANCH

logger = logging.getLogger(APP_NAME)

# Fragments of git's stderr that identify a rejected, diverged push.
NON_FAST_FORWARD_MARKERS = (
    "non-fast-forward",
    "fetch first",
    "[rejected]",
    "updates were rejected",
)

# Fragments of git's stderr that identify a transport failure.
NETWORK_MARKERS = (
    "could not resolve host",
    "unable to access",
    "could not read from remote",
    "connection timed out",
    "connection refused",
    "network is unreachable",
    "operation timed out",
    "early eof",
    "the remote end hung up",
    "failed to connect",
)


class GitError(RuntimeError):
    """A git command exited with a non-zero status.

    Attributes:
        stderr (str): The captured standard error of the command.
    """

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class StageError(GitError):
    """A path could not be staged."""


class PushError(GitError):
    """The remote refused the push for a reason other than divergence."""


class NonFastForwardError(PushError):
    """The remote has commits the local branch does not."""


class NetworkError(PushError):
    """The remote could not be reached."""


class MergeConflict(GitError):
    """Integrating the remote produced content conflicts.

    Attributes:
        paths (list[str]): Paths left in conflict before the rebase was aborted.
    """

    def __init__(self, message: str, paths: list[str] | None = None, stderr: str = ""):
        super().__init__(message, stderr)
        self.paths = paths or []


class StageOp(enum.Enum):
    """How a path enters the index."""

    ADD = "add"
    DELETE = "delete"


def classify_push_error(error: GitError) -> PushError:
    """Maps a failed push or fetch onto the push error taxonomy.

    Args:
        error (GitError): The raw error from `_run`.

    Returns:
        PushError: A NonFastForwardError, NetworkError or plain PushError.
    """
    text = (error.stderr or str(error)).lower()
    if any(marker in text for marker in NON_FAST_FORWARD_MARKERS):
        return NonFastForwardError(str(error), error.stderr)
    if any(marker in text for marker in NETWORK_MARKERS):
        return NetworkError(str(error), error.stderr)
    return PushError(str(error), error.stderr)


class GitRepo:
    """A wrapper around the Git command-line interface for the dotfile store.

    This is the only place the daemon touches version control. Every method
    runs a blocking `git` subprocess in the store's working tree and raises
    `GitError` (or one of its subclasses) when the command fails.

    Attributes:
        path (Path): The file system path to the store root.
        remote_name (str): The remote pushed to and integrated from.
        branch (str): The remote branch tracked by the store.
        username (str | None): Account name used with token authentication.
    """

    def __init__(
        self,
        path: Path,
        remote_name: str = "origin",
        branch: str = DEFAULT_BRANCH,
        username: str | None = None,
    ):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            remote_name (str): The remote to push to. Defaults to 'origin'.
            branch (str): The remote branch. Defaults to DEFAULT_BRANCH.
            username (str | None): Account for token authentication.

        Raises:
            ValueError: If the specified path does not contain a .git directory.
        """
        self.path = path
        self.remote_name = remote_name
        self.branch = branch
        self.username = username
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    @classmethod
    def clone(cls, url: str, path: Path, **kwargs: str | None) -> "GitRepo":
        """Clones `url` into `path` and wraps the new working tree.

        Args:
            url (str): The remote repository URL.
            path (Path): The destination directory (must not exist yet).
            **kwargs: Forwarded to the GitRepo constructor.

        Returns:
            GitRepo: The wrapper for the fresh clone.

        Raises:
            GitError: If the clone fails.
        """
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            subprocess.run(
                ["git", "clone", url, str(path)],
                capture_output=True,
                text=True,
                check=True,
                env=env,
            )
        except subprocess.CalledProcessError as e:
            raise GitError(f"Git error: {e.stderr or e}", e.stderr or "") from e
        return cls(path, **kwargs)

    def _run(
        self,
        args: list[str],
        capture: bool = True,
        env: dict | None = None,
        config: list[str] | None = None,
        strip: bool = True,
        detach: bool = False,
    ) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            capture (bool, optional):   Whether to capture and return stdout.
                                        Defaults to True.
            env (Optional[dict], optional): Environment variables for the subprocess.
            config (Optional[list[str]], optional): `-c key=value` pairs placed
                                                    before the subcommand.
            strip (bool, optional): Whether to strip surrounding whitespace
                                    from stdout. Defaults to True.
            detach (bool, optional): Run git in its own session so terminal
                                     and group signals aimed at the daemon
                                     do not kill it mid-operation.

        Returns:
            str:    The stripped stdout of the command if capture is True,
                    otherwise an empty string.

        Raises:
            GitError: If the git command returns a non-zero exit code.
        """
        cmd = ["git"]
        for item in config or []:
            cmd.extend(["-c", item])
        cmd.extend(args)
        try:
            res = subprocess.run(
                cmd,
                cwd=self.path,
                capture_output=True,
                text=True,
                check=True,
                env=env,
                start_new_session=detach,
            )
            if not capture:
                return ""
            return res.stdout.strip() if strip else res.stdout.rstrip("\n")
        except subprocess.CalledProcessError as e:
            raise GitError(f"Git error: {e.stderr or e}", e.stderr or "") from e

    def _relative(self, path: Path) -> str:
        """Returns `path` relative to the store root, as git expects it."""
        try:
            return Path(path).relative_to(self.path).as_posix()
        except ValueError:
            return Path(path).as_posix()

    @property
    def upstream(self) -> str:
        """The remote-tracking ref for the synced branch."""
        return f"{self.remote_name}/{self.branch}"

    def status_porcelain(self, path: str | None = None) -> list[str]:
        """Returns the porcelain (machine-readable) status of the repository.

        Args:
            path (Optional[str], optional): A specific path to check status for.
                                            Defaults to None.

        Returns:
            list[str]: A list of status lines returned by `git status --porcelain`.
        """
        cmd = ["status", "--porcelain", "--untracked-files=all"]
        if path:
            cmd.extend(["--", path])
        output = self._run(cmd, strip=False)
        return output.splitlines() if output else []

    def dirty_paths(self) -> list[tuple[Path, bool]]:
        """Lists working-tree paths that differ from HEAD.

        Returns:
            list[tuple[Path, bool]]: Absolute path and whether it was deleted.
        """
        result = []
        for line in self.status_porcelain():
            code, name = line[:2], line[3:]
            if " -> " in name:
                old, name = name.split(" -> ", 1)
                result.append((self.path / old.strip('"'), True))
            name = name.strip('"')
            result.append((self.path / name, "D" in code))
        return result

    def stage(self, path: Path, op: StageOp) -> None:
        """Stages a single path into the index.

        Args:
            path (Path): Absolute or store-relative path.
            op (StageOp): ADD for created/modified files, DELETE for removals.

        Raises:
            StageError: If git refuses the path.
        """
        rel = self._relative(path)
        if op is StageOp.ADD and not os.path.lexists(self.path / rel):
            # Gone since it was recorded; `git add` would reject the pathspec.
            logger.debug(f"{rel} no longer exists, staging it as a deletion.")
            op = StageOp.DELETE
        if op is StageOp.DELETE:
            cmd = ["rm", "--cached", "--ignore-unmatch", "--quiet", "--", rel]
        else:
            cmd = ["add", "--", rel]
        try:
            self._run(cmd, capture=False)
        except GitError as e:
            raise StageError(f"Could not stage {rel}: {e}", e.stderr) from e

    def has_staged_changes(self) -> bool:
        """Returns True if the index differs from HEAD."""
        try:
            self._run(["diff", "--cached", "--quiet"], capture=False)
        except GitError:
            return True
        return False

    def commit(self, message: str) -> str:
        """Creates a new commit from the index.

        Args:
            message (str): The commit message.

        Returns:
            str: The SHA-1 of the new commit.
        """
        self._run(["commit", "--no-verify", "-m", message], capture=False)
        return self._run(["rev-parse", "HEAD"])

    def amend(self, message: str) -> str:
        """Folds the index into the current HEAD commit.

        Args:
            message (str): The replacement commit message.

        Returns:
            str: The SHA-1 of the rewritten commit.
        """
        self._run(
            ["commit", "--amend", "--no-verify", "--allow-empty", "-m", message],
            capture=False,
        )
        return self._run(["rev-parse", "HEAD"])

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision (tag, branch, relative ref) to a full SHA-1 hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', 'master').

        Returns:
            Optional[str]:  The full SHA-1 hash,
                            or None if the revision could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev])
        except GitError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def ahead_count(self) -> int:
        """Counts local commits that the remote-tracking branch does not have.

        Returns:
            int: Number of unpushed commits. With no remote-tracking ref every
                 local commit counts as unpushed.
        """
        if self.rev_parse("HEAD") is None:
            return 0
        if self.rev_parse(self.upstream) is None:
            return int(self._run(["rev-list", "--count", "HEAD"]) or 0)
        return int(self._run(["rev-list", "--count", f"{self.upstream}..HEAD"]) or 0)

    def behind_count(self) -> int:
        """Counts remote-tracking commits missing from the local branch."""
        if self.rev_parse("HEAD") is None or self.rev_parse(self.upstream) is None:
            return 0
        return int(self._run(["rev-list", "--count", f"HEAD..{self.upstream}"]) or 0)

    def head_subject(self) -> str:
        """Returns the subject line of the HEAD commit."""
        return self._run(["log", "-1", "--format=%s"])

    def tracked_files(self, directory: Path) -> list[Path]:
        """Lists indexed files under `directory`.

        Used when a whole directory disappears at once and the filesystem
        reports no per-file events.

        Args:
            directory (Path): Absolute or store-relative directory.

        Returns:
            list[Path]: Absolute paths of the tracked files beneath it.
        """
        output = self._run(["ls-files", "-z", "--", self._relative(directory)])
        return [self.path / name for name in output.split("\0") if name]

    def _auth_config(self, token: str | None) -> list[str]:
        """Builds the per-command config carrying token authentication."""
        if not token:
            return []
        user = self.username or "git"
        basic = base64.b64encode(f"{user}:{token}".encode()).decode()
        return [f"http.extraHeader=Authorization: Basic {basic}"]

    def _network_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["GIT_SSH_COMMAND"] = "ssh -o BatchMode=yes"
        return env

    def push(self, token: str | None = None) -> None:
        """Pushes HEAD to the synced remote branch.

        Args:
            token (str | None): Access token for HTTPS remotes.

        Raises:
            NonFastForwardError: If the remote has diverged.
            NetworkError: If the remote could not be reached.
            PushError: For any other rejection.
        """
        cmd = ["push", self.remote_name, f"HEAD:refs/heads/{self.branch}"]
        try:
            self._run(
                cmd,
                env=self._network_env(),
                config=self._auth_config(token),
                detach=True,
            )
        except GitError as e:
            raise classify_push_error(e) from e

    def fetch(self, token: str | None = None) -> None:
        """Updates the remote-tracking ref for the synced branch.

        Raises:
            NetworkError: If the remote could not be reached.
            PushError: For any other fetch failure.
        """
        refspec = f"+refs/heads/{self.branch}:refs/remotes/{self.upstream}"
        try:
            self._run(
                ["fetch", self.remote_name, refspec],
                env=self._network_env(),
                config=self._auth_config(token),
                detach=True,
            )
        except GitError as e:
            raise classify_push_error(e) from e

    def conflicted_paths(self) -> list[str]:
        """Lists unmerged paths during an interrupted rebase or merge."""
        output = self._run(["diff", "--name-only", "--diff-filter=U"])
        return output.splitlines() if output else []

    def integrate(self, token: str | None = None) -> None:
        """Fetches the remote branch and rebases local commits onto it.

        On content conflicts the rebase is aborted so the working tree and the
        local commit are left exactly as they were.

        Args:
            token (str | None): Access token for HTTPS remotes.

        Raises:
            MergeConflict: If local and remote edits conflict.
            NetworkError: If the fetch could not reach the remote.
        """
        self.fetch(token)
        try:
            self._run(
                ["rebase", "--autostash", self.upstream], capture=False, detach=True
            )
        except GitError as e:
            paths = []
            try:
                paths = self.conflicted_paths()
            finally:
                self._abort_rebase()
            raise MergeConflict(
                f"Conflict integrating {self.upstream}: {', '.join(paths) or e}",
                paths,
                e.stderr,
            ) from e

    def _abort_rebase(self) -> None:
        try:
            self._run(["rebase", "--abort"], capture=False, detach=True)
        except GitError as e:
            logger.error(f"Could not abort rebase in {self.path}: {e}")
