import logging
import socket
import subprocess
import sys

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class SystemStrategy:
    """Base class defining the interface for system-level interactions."""

    def notify(self, title: str, message: str) -> None:
        """Sends a desktop notification.

        Args:
            title (str): The notification title.
            message (str): The notification body text.
        """
        pass


class MacOSStrategy(SystemStrategy):
    """System strategy implementation for macOS."""

    def notify(self, title: str, message: str) -> None:
        """Sends a notification using AppleScript."""
        # Sanitize quotes to prevent AppleScript syntax errors.
        clean_msg = message.replace('"', "'")
        clean_title = title.replace('"', "'")
        script = f'display notification "{clean_msg}" with title "{clean_title}"'
        try:
            subprocess.run(["osascript", "-e", script], stderr=subprocess.DEVNULL)
        except OSError as e:
            logger.debug(f"Notification failed: {e}")


class LinuxStrategy(SystemStrategy):
    """System strategy implementation for Linux."""

    def notify(self, title: str, message: str) -> None:
        """Sends a notification using `notify-send`."""
        try:
            subprocess.run(["notify-send", title, message], stderr=subprocess.DEVNULL)
        except FileNotFoundError:
            pass


def get_system() -> SystemStrategy:
    """Factory function to retrieve the platform-specific system strategy.

    Returns:
        SystemStrategy: An instance of MacOSStrategy, LinuxStrategy, or the base
        SystemStrategy depending on the operating system.
    """
    if sys.platform == "darwin":
        return MacOSStrategy()
    elif sys.platform.startswith("linux"):
        return LinuxStrategy()
    else:
        return SystemStrategy()


def get_hostname() -> str:
    """Returns the short hostname used to label sync commits."""
    return socket.gethostname().split(".")[0]
