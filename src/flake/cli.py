import argparse
import datetime
import logging
import os
import subprocess
import sys

from keyring.errors import KeyringError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import daemon
from .config import CONFIG_FILE, Config, parse_time, require_positive
from .constants import APP_NAME, LOG_FILE
from .credentials import MissingCredential, SecretStore
from .engine import Outcome
from .git_wrapper import GitError, GitRepo

logger = logging.getLogger(APP_NAME)
console = Console()


def _analyze_logs(seconds: int = 86400) -> list[str]:
    """
    Scans the daemon log for error messages that occurred within a recent time window.

    Args:
        seconds (int, optional): The number of seconds to look back. Defaults to 86400 (24h).

    Returns:
        list[str]: A list of error or critical log lines found within the time window.
    """
    if not LOG_FILE.exists():
        return []

    errors = []
    threshold = datetime.datetime.now() - datetime.timedelta(seconds=seconds)

    try:
        # Only the tail of the log matters for recent errors.
        file_size = LOG_FILE.stat().st_size
        read_size = min(file_size, 50 * 1024)

        with open(LOG_FILE) as f:
            if file_size > read_size:
                f.seek(file_size - read_size)
            lines = f.readlines()
    except OSError as e:
        return [f"Error reading log file: {e}"]

    for line in lines:
        if "ERROR" not in line and "CRITICAL" not in line:
            continue
        try:
            if line.startswith("["):
                line_dt = datetime.datetime.strptime(line[1:20], "%Y-%m-%d %H:%M:%S")
                if line_dt < threshold:
                    continue
            errors.append(line.strip())
        except ValueError:
            continue

    return errors


def register_token(token: str) -> None:
    """Stores the access token in the credentials store.

    Args:
        token (str): The remote access token.
    """
    try:
        SecretStore().set_token(token)
    except KeyringError as e:
        console.print(
            f"[bold red]ERROR:[/bold red] Something went wrong saving the access token: {e}"
        )
        sys.exit(1)
    console.print("[bold green]SUCCESS:[/bold green] Access token saved.")


def sync_now(config: Config) -> None:
    """Triggers an immediate cycle in the running daemon, or runs one here."""
    if daemon.request_sync():
        console.print(
            "[bold green]SUCCESS:[/bold green] Sync requested from the running daemon."
        )
        return

    daemon.setup_logging(interactive=True)
    try:
        with console.status("[bold blue]Syncing dotfiles...[/bold blue]", spinner="dots"):
            cycle = daemon.run_once(config)
    except (daemon.StoreError, GitError, MissingCredential) as e:
        console.print(f"[bold red]ERROR:[/bold red] {e}")
        sys.exit(1)

    if cycle.outcome is Outcome.SUCCESS:
        console.print(f"[bold green]SUCCESS:[/bold green] {cycle.detail}.")
    elif cycle.outcome is Outcome.NOOP:
        console.print(f"[dim]Nothing to sync ({cycle.detail}).[/dim]")
    else:
        console.print(f"[bold red]SYNC FAILED:[/bold red] {cycle.detail}")
        sys.exit(1)


def show_status(config: Config) -> None:
    """Displays the daemon state and the store's pending work."""
    pid = daemon.read_daemon_pid()

    system_content = Text()
    system_content.append("Daemon:   ", style="bold")
    if pid:
        system_content.append(f"Running (pid {pid})\n", style="bold green")
    else:
        system_content.append("Stopped\n", style="bold red")
    system_content.append("Remote:   ", style="bold")
    system_content.append(f"{config.core.remote_url or 'not configured'}\n")
    system_content.append("Interval: ", style="bold")
    system_content.append(f"{config.sync.interval:.0f}s\n")
    system_content.append("Token:    ", style="bold")
    if not config.core.needs_token:
        system_content.append("not required", style="dim")
    elif SecretStore().get_token():
        system_content.append("stored", style="green")
    else:
        system_content.append("missing (run 'flake auth TOKEN')", style="bold red")

    console.print(Panel(system_content, title="Daemon Status", expand=False))

    store = config.core.store_path
    try:
        repo = GitRepo(store, remote_name=config.core.remote_name, branch=config.core.branch)
        pending = len(repo.status_porcelain())
        unpushed = repo.ahead_count()
    except (ValueError, GitError) as e:
        console.print(
            Panel(
                f"Store unavailable: {e}",
                title="Store Status",
                expand=False,
                border_style="yellow",
            )
        )
        return

    store_content = Text()
    store_content.append(f"Path:     {store}\n")
    store_content.append(f"Pending:  {pending} files changed\n")
    if unpushed:
        store_content.append(f"Unpushed: {unpushed} commit(s)\n", style="bold yellow")
    else:
        store_content.append("Unpushed: none\n", style="green")

    recent_errors = _analyze_logs()
    if recent_errors:
        store_content.append(
            f"\n{len(recent_errors)} error(s) in the last 24h, run 'flake log'.",
            style="yellow",
        )

    console.print(Panel(store_content, title="Store Status", expand=False))


def tail_log() -> None:
    """Follows the daemon log file in real-time."""
    if not LOG_FILE.exists():
        console.print(f"[red]No log file found yet at {LOG_FILE}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{LOG_FILE}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "1000", "-f", str(LOG_FILE)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")


def open_config() -> None:
    """Opens the global configuration file in the system default editor."""
    if not CONFIG_FILE.exists():
        CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(CONFIG_FILE, "w") as f:
            f.write(
                "# flake configuration\n\n"
                "[core]\n"
                '# remote_url = "https://github.com/you/dotfiles.git"\n'
                '# username = "you"\n\n'
                "[sync]\n"
                '# interval = "30m"\n'
            )

    editor = os.environ.get("EDITOR") or "nano"
    console.print(f"Opening [cyan]{CONFIG_FILE}[/cyan]...")
    try:
        subprocess.run([editor, str(CONFIG_FILE)])
    except OSError as e:
        console.print(f"[red]Could not open editor: {e}[/red]")


def show_config_reference() -> None:
    """Displays a formatted table of all available configuration options."""
    table = Table(title="flake Configuration Schema", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Type", style="dim")
    table.add_column("Default", style="yellow")
    table.add_column("Description")

    table.add_row(
        "core",
        "remote_url",
        "str",
        "git config github.dotfiles",
        "Remote dotfile repository (HTTPS uses the stored token, SSH uses your keys).",
    )
    table.add_row(
        "", "username", "str", "git config github.username", "Account for token auth."
    )
    table.add_row("", "remote_name", "str", '"origin"', "Remote to push to.")
    table.add_row("", "branch", "str", '"master"', "Remote branch receiving syncs.")
    table.add_row("", "store_dir", "str", '"~/.snowflakes"', "Local store location.")

    table.add_row(
        "sync", "interval", "int | str", '"30m"', "Time between sync cycles."
    )
    table.add_row("", "push_attempts", "int", "3", "Push attempts on network errors.")
    table.add_row("", "initial_backoff", "int | str", '"2s"', "First retry delay.")
    table.add_row("", "max_backoff", "int | str", '"60s"', "Longest retry delay.")
    table.add_row("", "sync_on_start", "bool", "true", "Sync once at startup.")

    table.add_row("watch", "ignore", "list", "[]", "Extra glob patterns never synced.")
    table.add_row(
        "", "max_restarts", "int", "5", "Watcher restarts before the daemon exits."
    )
    table.add_row("", "restart_backoff", "int | str", '"1s"', "First restart delay.")

    table.add_row(
        "mirror", "enabled", "bool", "false", "Copy $HOME versions into the store."
    )
    table.add_row(
        "", "remove_missing", "bool", "false", "Delete files missing from $HOME."
    )

    table.add_row(
        "limits",
        "max_log_size",
        "int | str",
        '"5mb"',
        "Max size for log files before rotation (e.g., '5mb', '1gb').",
    )

    console.print(table)


def main() -> None:
    """Main entry point for the flake CLI."""
    parser = argparse.ArgumentParser(prog="flake", description="Keep track of dotfiles")
    subparsers = parser.add_subparsers(dest="command")

    auth_parser = subparsers.add_parser(
        "auth", help="Store auth token in the credentials store"
    )
    auth_parser.add_argument("token", help="GitHub's access token")

    sync_parser = subparsers.add_parser(
        "sync", help="Watch the store and synchronize it (foreground)"
    )
    sync_parser.add_argument(
        "-r", "--repository", metavar="HTTP_URL", help="The repository http url"
    )
    sync_parser.add_argument(
        "-i",
        "--interval",
        metavar="SECONDS",
        help="The interval to sync files (e.g. 1800, '30m')",
    )
    sync_parser.add_argument(
        "--detached",
        action="store_true",
        help="Log to the daemon log file (for service managers)",
    )

    subparsers.add_parser("now", help="Sync immediately")
    subparsers.add_parser("status", help="Show daemon and store status")
    subparsers.add_parser("log", help="Tail the daemon log file")

    config_parser = subparsers.add_parser(
        "config", help="Open global config file or view options"
    )
    config_parser.add_argument(
        "--list",
        "-l",
        action="store_true",
        help="List all available configuration options and their descriptions",
    )

    args = parser.parse_args()

    if args.command == "auth":
        register_token(args.token)
        return
    elif args.command == "sync":
        interval = None
        if args.interval is not None:
            raw = int(args.interval) if args.interval.isdigit() else args.interval
            try:
                interval = require_positive(parse_time(raw))
            except ValueError as e:
                console.print(f"[bold red]ERROR:[/bold red] {e}")
                sys.exit(1)
        config = Config.load(repository=args.repository, interval=interval)
        daemon.main(config, interactive=not args.detached)
        return
    elif args.command == "now":
        sync_now(Config.load())
        return
    elif args.command == "status":
        show_status(Config.load())
        return
    elif args.command == "log":
        tail_log()
        return
    elif args.command == "config":
        if args.list:
            show_config_reference()
        else:
            open_config()
        return

    console.print(
        "Please, run flake command with `auth` or `sync` subcommands "
        "(see `flake --help`)."
    )


if __name__ == "__main__":
    main()
