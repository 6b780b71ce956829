"""Sync credentials kept in the OS secret store via keyring."""

import json
import logging
from dataclasses import dataclass
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

__all__ = ["KeychainManager", "StoredCredentials"]

logger = logging.getLogger(__name__)

SERVICE_NAME = "wearsync"
ACCOUNT_NAME = "sync_credentials"


@dataclass
class StoredCredentials:
    """Credentials stored in keychain.

    Either an access/refresh token pair or an API key. When both are
    present the access token wins.
    """

    user_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    api_key: Optional[str] = None

    @property
    def is_api_key_auth(self) -> bool:
        return bool(self.api_key) and not self.access_token

    @property
    def credential(self) -> Optional[str]:
        """The value sent with requests."""
        return self.access_token or self.api_key

    @property
    def has_auth(self) -> bool:
        return bool(self.user_id) and bool(self.credential)

    @property
    def user_key(self) -> str:
        """Namespace for per-user local data."""
        return user_key_for(self.user_id)

    def to_json(self) -> str:
        return json.dumps(
            {
                "user_id": self.user_id,
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "api_key": self.api_key,
            }
        )

    @classmethod
    def from_json(cls, data: str) -> "StoredCredentials":
        parsed = json.loads(data)
        return cls(
            user_id=parsed["user_id"],
            access_token=parsed.get("access_token"),
            refresh_token=parsed.get("refresh_token"),
            api_key=parsed.get("api_key"),
        )


def user_key_for(user_id: Optional[str]) -> str:
    return f"user.{user_id}" if user_id else "user.none"


class KeychainManager:
    """Reads and writes the single credentials entry of this app."""

    def __init__(self, service_name: str = SERVICE_NAME):
        self.service_name = service_name

    def store(self, credentials: StoredCredentials) -> bool:
        """Replace the stored entry.

        Returns:
            False if the secret store refused the write
        """
        try:
            keyring.set_password(self.service_name, ACCOUNT_NAME, credentials.to_json())
            logger.info(f"Credentials stored for user {credentials.user_id}")
            return True
        except KeyringError as e:
            logger.error(f"Keyring write failed: {e}")
            return False

    def load(self) -> Optional[StoredCredentials]:
        """The stored entry, or None when signed out or unreadable."""
        try:
            raw = keyring.get_password(self.service_name, ACCOUNT_NAME)
            return StoredCredentials.from_json(raw) if raw else None
        except KeyringError as e:
            logger.error(f"Keyring read failed: {e}")
            return None
        except (json.JSONDecodeError, KeyError) as e:
            logger.error(f"Stored credentials are malformed: {e}")
            return None

    def delete(self) -> bool:
        """Remove the entry. Removing a missing entry counts as success."""
        try:
            keyring.delete_password(self.service_name, ACCOUNT_NAME)
            logger.info("Stored credentials removed")
            return True
        except PasswordDeleteError:
            return True
        except KeyringError as e:
            logger.error(f"Keyring delete failed: {e}")
            return False

    def update_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> bool:
        """Replace the token pair, keeping the old refresh token if none is given.

        Returns:
            True if stored; False when nothing is signed in or the write failed
        """
        current = self.load()
        if current is None:
            logger.warning("Cannot update tokens: no stored credentials")
            return False
        current.access_token = access_token
        if refresh_token:
            current.refresh_token = refresh_token
        return self.store(current)

    def has_credentials(self) -> bool:
        credentials = self.load()
        return credentials is not None and credentials.has_auth
