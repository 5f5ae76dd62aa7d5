"""Tests for daemon wiring, process control and the watch loop."""

import signal
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from flake import daemon
from flake.config import Config
from flake.credentials import MissingCredential
from flake.engine import Trigger


@pytest.fixture
def config(tmp_path: Path) -> Config:
    conf = Config()
    conf.core.store_dir = str(tmp_path / "store")
    conf.core.remote_url = "git@github.com:me/dots.git"
    return conf


def test_open_store_rejects_file(tmp_path: Path, config: Config) -> None:
    (tmp_path / "store").write_text("oops")

    with pytest.raises(daemon.StoreError, match="is a file!"):
        daemon.open_store(config)


def test_open_store_uses_existing_repo(tmp_path: Path, config: Config) -> None:
    (tmp_path / "store" / ".git").mkdir(parents=True)

    repo = daemon.open_store(config)

    assert repo.path == (tmp_path / "store").resolve()
    assert repo.branch == "master"


def test_open_store_clones_when_missing(
    tmp_path: Path, config: Config, mocker: MagicMock
) -> None:
    """Verifies that a missing store is cloned from the configured remote."""
    clone = mocker.patch("flake.daemon.GitRepo.clone")

    daemon.open_store(config)

    clone.assert_called_once_with(
        "git@github.com:me/dots.git",
        (tmp_path / "store").resolve(),
        remote_name="origin",
        branch="master",
        username=None,
    )


def test_open_store_without_remote(config: Config) -> None:
    config.core.remote_url = None
    with pytest.raises(daemon.StoreError, match="repository url not provided"):
        daemon.open_store(config)


def test_build_engine_only_uses_token_for_https(tmp_path: Path, config: Config) -> None:
    """Verifies that SSH remotes skip the keyring entirely."""
    repo = MagicMock(path=tmp_path)
    engine = daemon.build_engine(config, repo, MagicMock())
    assert engine.secrets is None
    assert engine.mirror is None

    config.core.remote_url = "https://github.com/me/dots.git"
    config.mirror.enabled = True
    config.sync.push_attempts = 7
    engine = daemon.build_engine(config, repo, MagicMock())
    assert engine.secrets is not None
    assert engine.mirror is not None
    assert engine.retry_policy.max_attempts == 7


def test_request_sync_signals_daemon(mocker: MagicMock) -> None:
    mocker.patch("flake.daemon.read_daemon_pid", return_value=1234)
    kill = mocker.patch("flake.daemon.os.kill")

    assert daemon.request_sync() is True
    kill.assert_called_once_with(1234, signal.SIGUSR1)


def test_request_sync_without_daemon(mocker: MagicMock) -> None:
    mocker.patch("flake.daemon.read_daemon_pid", return_value=None)
    assert daemon.request_sync() is False


def test_read_daemon_pid_ignores_stale_file(tmp_path: Path, mocker: MagicMock) -> None:
    pid_file = tmp_path / "daemon.pid"
    pid_file.write_text("999999")
    mocker.patch("flake.daemon.PID_FILE", pid_file)
    mocker.patch("flake.daemon.os.kill", side_effect=ProcessLookupError)

    assert daemon.read_daemon_pid() is None


def test_run_once_reconciles_then_syncs(config: Config, mocker: MagicMock) -> None:
    mocker.patch("flake.daemon.open_store")
    engine = mocker.patch("flake.daemon.build_engine").return_value

    daemon.run_once(config)

    engine.reconcile.assert_called_once()
    engine.run_cycle.assert_called_once_with(Trigger.MANUAL)


def test_run_fails_fast_without_token(config: Config, mocker: MagicMock) -> None:
    """Verifies that a missing token aborts before anything is watched."""
    mocker.patch("flake.daemon.open_store")
    engine = mocker.patch("flake.daemon.build_engine").return_value
    engine.secrets.require_token.side_effect = MissingCredential("no token")
    watcher_cls = mocker.patch("flake.daemon.FileWatcher")

    with pytest.raises(MissingCredential):
        daemon.run(config)

    watcher_cls.assert_not_called()


def test_run_syncs_on_start_then_schedules(config: Config, mocker: MagicMock) -> None:
    """Verifies the startup order: watch, reconcile, startup cycle, schedule."""
    mocker.patch("flake.daemon.open_store")
    engine = mocker.patch("flake.daemon.build_engine").return_value
    watcher_cls = mocker.patch("flake.daemon.FileWatcher")
    scheduler = mocker.patch("flake.daemon.SyncScheduler").return_value
    mocker.patch("flake.daemon.signal.signal")
    stop = threading.Event()

    daemon.run(config, stop)

    watcher_cls.return_value.__enter__.assert_called_once()
    kwargs = watcher_cls.call_args.kwargs
    assert kwargs["list_tracked"] == daemon.open_store.return_value.tracked_files
    assert kwargs["on_restart"] == engine.rescan
    engine.reconcile.assert_called_once()
    scheduler.fire.assert_called_once_with(Trigger.STARTUP)
    scheduler.run.assert_called_once_with(stop)


def test_main_exits_on_fatal_error(config: Config, mocker: MagicMock) -> None:
    mocker.patch("flake.daemon.setup_logging")
    mocker.patch("flake.daemon._write_pid_file")
    mocker.patch("flake.daemon.run", side_effect=daemon.StoreError("broken"))

    with pytest.raises(SystemExit) as exc:
        daemon.main(config)

    assert exc.value.code == 1
