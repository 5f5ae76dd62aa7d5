import base64
import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from flake.git_wrapper import (
    GitError,
    GitRepo,
    MergeConflict,
    NetworkError,
    NonFastForwardError,
    PushError,
    StageError,
    StageOp,
    classify_push_error,
)


@pytest.fixture
def repo(tmp_path: Path) -> GitRepo:
    """Creates a GitRepo over a fake .git directory."""
    (tmp_path / ".git").mkdir()
    return GitRepo(tmp_path, username="octocat")


def test_requires_git_directory(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        GitRepo(tmp_path)


@pytest.mark.parametrize(
    "stderr, expected",
    [
        (" ! [rejected]        HEAD -> master (fetch first)", NonFastForwardError),
        ("error: failed to push some refs\nhint: Updates were rejected", NonFastForwardError),
        ("fatal: unable to access 'https://x/': Could not resolve host: x", NetworkError),
        ("fatal: Could not read from remote repository.", NetworkError),
        ("remote: Permission to me/dots.git denied to you.", PushError),
    ],
)
def test_classify_push_error(stderr: str, expected: type) -> None:
    """Verifies that git stderr is mapped onto the push error taxonomy."""
    error = classify_push_error(GitError("Git error", stderr))
    assert type(error) is expected
    assert error.stderr == stderr


def test_stage_add_and_delete_commands(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies that paths are staged relative to the store root."""
    mock_run = mocker.patch.object(repo, "_run")
    (repo.path / ".config" / "git").mkdir(parents=True)
    (repo.path / ".config" / "git" / "config").write_text("[user]")

    repo.stage(repo.path / ".config" / "git" / "config", StageOp.ADD)
    mock_run.assert_called_with(["add", "--", ".config/git/config"], capture=False)

    repo.stage(repo.path / ".bashrc", StageOp.DELETE)
    mock_run.assert_called_with(
        ["rm", "--cached", "--ignore-unmatch", "--quiet", "--", ".bashrc"],
        capture=False,
    )


def test_stage_failure_raises_stage_error(mocker: MagicMock, repo: GitRepo) -> None:
    mocker.patch.object(repo, "_run", side_effect=GitError("Git error", "fatal: bad path"))
    (repo.path / "a.conf").write_text("x")

    with pytest.raises(StageError) as exc:
        repo.stage(repo.path / "a.conf", StageOp.ADD)

    assert exc.value.stderr == "fatal: bad path"


def test_dirty_paths_parses_porcelain(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies parsing of modified, deleted, untracked and renamed entries."""
    mocker.patch.object(
        repo,
        "status_porcelain",
        return_value=[
            " M .vimrc",
            " D .bashrc",
            "?? .config/new.toml",
            "R  old.conf -> new.conf",
        ],
    )

    assert repo.dirty_paths() == [
        (repo.path / ".vimrc", False),
        (repo.path / ".bashrc", True),
        (repo.path / ".config/new.toml", False),
        (repo.path / "old.conf", True),
        (repo.path / "new.conf", False),
    ]


def test_run_keeps_leading_space_when_not_stripping(
    mocker: MagicMock, repo: GitRepo
) -> None:
    """Verifies that porcelain output keeps its status columns intact."""
    mocker.patch(
        "subprocess.run",
        return_value=subprocess.CompletedProcess([], 0, stdout=" M .vimrc\n", stderr=""),
    )
    assert repo.status_porcelain() == [" M .vimrc"]


def test_run_wraps_failures(mocker: MagicMock, repo: GitRepo) -> None:
    mocker.patch(
        "subprocess.run",
        side_effect=subprocess.CalledProcessError(1, ["git"], stderr="fatal: boom"),
    )

    with pytest.raises(GitError) as exc:
        repo._run(["status"])

    assert exc.value.stderr == "fatal: boom"


def test_has_staged_changes(mocker: MagicMock, repo: GitRepo) -> None:
    mock_run = mocker.patch.object(repo, "_run")
    assert repo.has_staged_changes() is False

    mock_run.side_effect = GitError("exit 1")
    assert repo.has_staged_changes() is True


def test_push_sends_token_as_basic_auth_header(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies the token is passed per command and never written to config."""
    mock_run = mocker.patch.object(repo, "_run")

    repo.push(token="s3cret")

    args, kwargs = mock_run.call_args
    assert args[0] == ["push", "origin", "HEAD:refs/heads/master"]
    expected = base64.b64encode(b"octocat:s3cret").decode()
    assert kwargs["config"] == [f"http.extraHeader=Authorization: Basic {expected}"]
    assert kwargs["env"]["GIT_TERMINAL_PROMPT"] == "0"
    assert kwargs["detach"] is True


def test_push_without_token_has_no_auth(mocker: MagicMock, repo: GitRepo) -> None:
    mock_run = mocker.patch.object(repo, "_run")
    repo.push()
    assert mock_run.call_args.kwargs["config"] == []


def test_push_classifies_rejection(mocker: MagicMock, repo: GitRepo) -> None:
    mocker.patch.object(
        repo, "_run", side_effect=GitError("Git error", "! [rejected] (fetch first)")
    )
    with pytest.raises(NonFastForwardError):
        repo.push()


def test_ahead_count_without_upstream_counts_all(mocker: MagicMock, repo: GitRepo) -> None:
    mocker.patch.object(repo, "rev_parse", side_effect=lambda rev: "sha" if rev == "HEAD" else None)
    mock_run = mocker.patch.object(repo, "_run", return_value="4")

    assert repo.ahead_count() == 4
    mock_run.assert_called_once_with(["rev-list", "--count", "HEAD"])


def test_ahead_count_on_empty_repo(mocker: MagicMock, repo: GitRepo) -> None:
    mocker.patch.object(repo, "rev_parse", return_value=None)
    assert repo.ahead_count() == 0


def test_integrate_aborts_rebase_on_conflict(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies that a conflicting rebase is aborted and reported with its paths."""
    mocker.patch.object(repo, "fetch")
    calls: list[list[str]] = []

    def fake_run(args: list[str], **kwargs: object) -> str:
        calls.append(args)
        if args[0] == "rebase" and args[1] == "--autostash":
            raise GitError("Git error", "CONFLICT (content): Merge conflict in .vimrc")
        if args[0] == "diff":
            return ".vimrc"
        return ""

    mocker.patch.object(repo, "_run", side_effect=fake_run)

    with pytest.raises(MergeConflict) as exc:
        repo.integrate(token="t")

    assert exc.value.paths == [".vimrc"]
    assert ["rebase", "--abort"] in calls
    repo.fetch.assert_called_once_with("t")


def test_integrate_clean_rebase(mocker: MagicMock, repo: GitRepo) -> None:
    mocker.patch.object(repo, "fetch")
    mock_run = mocker.patch.object(repo, "_run")

    repo.integrate()

    mock_run.assert_called_once_with(
        ["rebase", "--autostash", "origin/master"], capture=False, detach=True
    )


def test_stage_vanished_file_as_deletion(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies that a pending add for a file that is gone does not block staging.

    `git add` rejects a missing pathspec, so the path is removed from the
    index instead.
    """
    mock_run = mocker.patch.object(repo, "_run")

    repo.stage(repo.path / "new.conf", StageOp.ADD)

    mock_run.assert_called_once_with(
        ["rm", "--cached", "--ignore-unmatch", "--quiet", "--", "new.conf"],
        capture=False,
    )


def test_network_commands_run_in_own_session(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies that a Ctrl-C aimed at the daemon cannot kill an in-flight push."""
    run = mocker.patch(
        "subprocess.run",
        return_value=subprocess.CompletedProcess([], 0, stdout="", stderr=""),
    )

    repo.push()
    assert run.call_args.kwargs["start_new_session"] is True

    repo.status_porcelain()
    assert run.call_args.kwargs["start_new_session"] is False


def test_fetch_runs_in_own_session(mocker: MagicMock, repo: GitRepo) -> None:
    mock_run = mocker.patch.object(repo, "_run")

    repo.fetch(token="t")

    args, kwargs = mock_run.call_args
    assert args[0] == ["fetch", "origin", "+refs/heads/master:refs/remotes/origin/master"]
    assert kwargs["detach"] is True


def test_tracked_files_lists_index_entries(mocker: MagicMock, repo: GitRepo) -> None:
    """Verifies that files under a directory are resolved from the index."""
    mock_run = mocker.patch.object(
        repo, "_run", return_value="dir/a.conf\0dir/sub/b.conf\0"
    )

    assert repo.tracked_files(repo.path / "dir") == [
        repo.path / "dir" / "a.conf",
        repo.path / "dir" / "sub" / "b.conf",
    ]
    mock_run.assert_called_once_with(["ls-files", "-z", "--", "dir"])


def test_behind_count(mocker: MagicMock, repo: GitRepo) -> None:
    mocker.patch.object(repo, "rev_parse", return_value="sha")
    mock_run = mocker.patch.object(repo, "_run", return_value="2")

    assert repo.behind_count() == 2
    mock_run.assert_called_once_with(["rev-list", "--count", "HEAD..origin/master"])


def test_behind_count_without_upstream(mocker: MagicMock, repo: GitRepo) -> None:
    mocker.patch.object(repo, "rev_parse", side_effect=lambda rev: "sha" if rev == "HEAD" else None)
    assert repo.behind_count() == 0


def test_head_subject(mocker: MagicMock, repo: GitRepo) -> None:
    mock_run = mocker.patch.object(repo, "_run", return_value="Update 1 file (1 modified)")
    assert repo.head_subject() == "Update 1 file (1 modified)"
    mock_run.assert_called_once_with(["log", "-1", "--format=%s"])
