"""Single-flight access token refresh."""

import logging
import threading
from typing import TYPE_CHECKING, Callable, Optional

from .keychain import KeychainManager

if TYPE_CHECKING:
    from ..sync.http_client import SyncApiClient

__all__ = ["TokenRefreshCoordinator"]

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[bool], None]


def _safe_call(callback: RefreshCallback, success: bool) -> None:
    try:
        callback(success)
    except Exception as e:
        logger.error(f"Token refresh callback failed: {e}", exc_info=True)


class TokenRefreshCoordinator:
    """Ensures at most one token refresh is in flight.

    The first caller performs the refresh on its own thread. Callers that
    arrive while it runs are queued and get the same result. A failed
    refresh leaves the stored credentials untouched.
    """

    def __init__(self, keychain: KeychainManager, client: "SyncApiClient"):
        self.keychain = keychain
        self.client = client
        self._lock = threading.Lock()
        self._refreshing = False
        self._waiters: list[RefreshCallback] = []

    @property
    def is_refreshing(self) -> bool:
        with self._lock:
            return self._refreshing

    @property
    def pending_waiters(self) -> int:
        with self._lock:
            return len(self._waiters)

    def request_refresh(self, completion: RefreshCallback) -> None:
        """Refresh the access token, or join the refresh already running.

        Args:
            completion: Called with True on success, False on failure
        """
        with self._lock:
            if self._refreshing:
                self._waiters.append(completion)
                logger.debug("Token refresh in progress, waiting for result")
                return

            credentials = self.keychain.load()
            refresh_token = credentials.refresh_token if credentials else None
            if not refresh_token:
                logger.warning("No refresh token - cannot refresh")
                missing = True
            else:
                missing = False
                self._refreshing = True
                self._waiters.append(completion)

        if missing:
            _safe_call(completion, False)
            return

        logger.info("Attempting token refresh...")
        self._finish(self._perform(refresh_token))

    def refresh(self, timeout: Optional[float] = None) -> bool:
        """Blocking form of request_refresh.

        Returns:
            True if the access token was refreshed
        """
        done = threading.Event()
        result = {"success": False}

        def on_done(success: bool) -> None:
            result["success"] = success
            done.set()

        self.request_refresh(on_done)
        if not done.wait(timeout):
            logger.warning("Timed out waiting for token refresh")
            return False
        return result["success"]

    def _perform(self, refresh_token: str) -> bool:
        try:
            tokens = self.client.refresh_tokens(refresh_token)
        except Exception as e:
            logger.warning(f"Token refresh failed: {e}")
            return False

        if not self.keychain.update_tokens(tokens.access_token, tokens.refresh_token):
            logger.error("Token refresh succeeded but new tokens could not be stored")
            return False

        logger.info("Token refreshed successfully")
        return True

    def _finish(self, success: bool) -> None:
        with self._lock:
            waiters = self._waiters
            self._waiters = []
            self._refreshing = False

        for callback in waiters:
            _safe_call(callback, success)
