"""Access token storage backed by the OS keyring."""

import logging

import keyring
from keyring.errors import KeyringError

from .constants import APP_NAME, KEYRING_ENTRY, KEYRING_SERVICE

logger = logging.getLogger(APP_NAME)


class MissingCredential(RuntimeError):
    """No access token is available for an authenticated push."""


class SecretStore:
    """Reads and writes the remote access token in the system keyring.

    Attributes:
        service (str): Keyring service name.
        entry (str): Keyring entry (username slot) holding the token.
    """

    def __init__(self, service: str = KEYRING_SERVICE, entry: str = KEYRING_ENTRY):
        self.service = service
        self.entry = entry

    def get_token(self) -> str | None:
        """Returns the stored token, or None if absent or the keyring is unreachable."""
        try:
            return keyring.get_password(self.service, self.entry)
        except KeyringError as e:
            logger.error(f"Unable to read from the credentials store: {e}")
            return None

    def set_token(self, token: str) -> None:
        """Stores `token`, replacing any previous value.

        Raises:
            KeyringError: If the keyring backend rejects the write.
        """
        keyring.set_password(self.service, self.entry, token)
        logger.info("Access token saved to the credentials store.")

    def require_token(self) -> str:
        """Returns the stored token.

        Raises:
            MissingCredential: If no token has been registered.
        """
        token = self.get_token()
        if not token:
            raise MissingCredential(
                "Missing access token, use `flake auth TOKEN` to set it up."
            )
        return token
