from unittest.mock import MagicMock

from flake import system


def test_get_system_by_platform(mocker: MagicMock) -> None:
    """Verifies that the factory picks the strategy for the running OS."""
    mocker.patch("sys.platform", "darwin")
    assert isinstance(system.get_system(), system.MacOSStrategy)

    mocker.patch("sys.platform", "linux")
    assert isinstance(system.get_system(), system.LinuxStrategy)

    mocker.patch("sys.platform", "win32")
    assert type(system.get_system()) is system.SystemStrategy


def test_macos_notify_sanitizes_quotes(mocker: MagicMock) -> None:
    run = mocker.patch("subprocess.run")

    system.MacOSStrategy().notify('Sync "conflict"', 'in ".vimrc"')

    script = run.call_args[0][0][2]
    assert script == "display notification \"in '.vimrc'\" with title \"Sync 'conflict'\""


def test_linux_notify_without_notify_send(mocker: MagicMock) -> None:
    """Verifies that a missing notify-send binary is not an error."""
    mocker.patch("subprocess.run", side_effect=FileNotFoundError)
    system.LinuxStrategy().notify("title", "body")


def test_get_hostname_is_short(mocker: MagicMock) -> None:
    mocker.patch("socket.gethostname", return_value="laptop.local.lan")
    assert system.get_hostname() == "laptop"
