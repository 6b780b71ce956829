"""HTTP client for the collection API."""

import gzip
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from .. import __version__
from .retry import RetryAborted, RetryConfig, RetryExhausted, retry_with_backoff

__all__ = [
    "SyncApiClient",
    "SyncClientError",
    "SyncAuthError",
    "SyncRejectedError",
    "SyncNetworkError",
    "TokenPair",
]

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Open-Wearables-API-Key"


class SyncClientError(Exception):
    """Collection API client error."""

    pass


class SyncAuthError(SyncClientError):
    """The server refused the credentials (401)."""

    def __init__(self, message: str = "Invalid or expired credentials", status_code: int = 401):
        self.status_code = status_code
        super().__init__(message)


class SyncRejectedError(SyncClientError):
    """The server permanently refused a request (4xx other than 401)."""

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Rejected ({status_code}): {detail}" if detail else f"Rejected ({status_code})")


class SyncNetworkError(SyncClientError):
    """Server unreachable, timed out or failing (5xx)."""

    pass


class _TransientError(Exception):
    """A failure worth retrying: network trouble or a 5xx."""

    pass


class _RequestAborted(Exception):
    """abort() was called while the request was in flight."""

    pass


@dataclass
class TokenPair:
    """Result of a token refresh."""

    access_token: str
    refresh_token: Optional[str] = None


def _error_detail(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] if response.text else ""
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or "")
    return ""


class SyncApiClient:
    """Posts serialized chunks and refreshes tokens.

    Handles:
    - Session management (abortable)
    - Token or API-key authentication headers
    - Optional gzip compression
    - Retry with exponential backoff on transient failures
    - Response classification into the client error taxonomy
    """

    DEFAULT_RETRY_CONFIG = RetryConfig(
        max_retries=3,
        base_delay=1.0,
        max_delay=30.0,
        exponential_base=2.0,
        jitter=True,
    )

    USER_AGENT = f"wearsync/{__version__}"

    def __init__(
        self,
        api_url: str,
        timeout: int = 120,
        compress: bool = False,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize client.

        Args:
            api_url: API base URL, e.g. https://host/api/v1
            timeout: Request timeout in seconds
            compress: Gzip request bodies
            retry_config: Backoff for transient failures
            session: Session to use instead of a private one; close() leaves it open
        """
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.compress = compress
        self.retry_config = retry_config or self.DEFAULT_RETRY_CONFIG
        self._session = session or requests.Session()
        self._owns_session = session is None
        self._session_lock = threading.Lock()
        self._abort_count = 0

    def sync_url(self, user_id: str) -> str:
        return f"{self.api_url}/sdk/users/{user_id}/sync"

    def _get_headers(self, credential: Optional[str] = None, api_key_mode: bool = False) -> dict:
        headers = {
            "Accept": "application/json",
            "User-Agent": self.USER_AGENT,
        }
        if credential:
            if api_key_mode:
                headers[API_KEY_HEADER] = credential
            elif credential.startswith("Bearer "):
                headers["Authorization"] = credential
            else:
                headers["Authorization"] = f"Bearer {credential}"
        return headers

    def post_sync(
        self,
        user_id: str,
        body: bytes,
        credential: str,
        api_key_mode: bool = False,
        should_abort: Optional[Callable[[], bool]] = None,
    ) -> None:
        """Deliver one serialized chunk.

        Args:
            user_id: Remote user id
            body: Serialized JSON payload
            credential: Access token or API key
            api_key_mode: Send the credential as an API key
            should_abort: Polled between retries; abort() also cuts off the request in flight

        Raises:
            SyncAuthError: 401
            SyncRejectedError: Any other 4xx
            SyncNetworkError: 5xx, timeouts and connection failures after retries
        """
        url = self.sync_url(user_id)
        headers = self._get_headers(credential, api_key_mode)
        headers["Content-Type"] = "application/json"
        data = body
        if self.compress:
            data = gzip.compress(body)
            headers["Content-Encoding"] = "gzip"

        def do_request() -> None:
            try:
                response = self._post_abortable(url, data, headers)
            except requests.exceptions.ConnectionError as e:
                raise _TransientError(f"Cannot connect to {self.api_url}: {e}")
            except requests.exceptions.Timeout:
                raise _TransientError("Request timed out")
            except requests.exceptions.RequestException as e:
                raise _TransientError(f"Request failed: {e}")

            status = response.status_code
            if status == 401:
                raise SyncAuthError(_error_detail(response) or "Invalid or expired credentials")
            if status >= 500:
                raise _TransientError(f"Server error: {status}")
            if status >= 400:
                raise SyncRejectedError(status, _error_detail(response))
            if status < 200 or status >= 300:
                raise _TransientError(f"Unexpected status: {status}")

        try:
            retry_with_backoff(
                do_request,
                config=self.retry_config,
                retryable_exceptions=(_TransientError,),
                should_abort=should_abort,
            )
        except _RequestAborted as e:
            raise SyncNetworkError("Aborted: request cancelled in flight") from e
        except RetryAborted as e:
            raise SyncNetworkError(f"Aborted: {e.last_error}") from e.last_error
        except RetryExhausted as e:
            if e.last_error:
                raise SyncNetworkError(str(e.last_error)) from e.last_error
            raise SyncNetworkError("Request failed after retries") from e

    def _post_abortable(self, url: str, data: bytes, headers: dict) -> requests.Response:
        """POST on a worker thread so abort() returns control immediately.

        An abandoned request finishes (or fails on the closed session) in the
        background; its response is discarded and the chunk stays staged.

        Raises:
            _RequestAborted: abort() was called before the response arrived
        """
        with self._session_lock:
            session = self._session
            started_at = self._abort_count
        done = threading.Event()
        outcome: dict = {}

        def run() -> None:
            try:
                outcome["response"] = session.post(
                    url, data=data, headers=headers, timeout=self.timeout
                )
            except Exception as e:
                outcome["error"] = e
            finally:
                done.set()

        threading.Thread(target=run, name="wearsync-http", daemon=True).start()
        while not done.wait(0.05):
            if self._abort_count != started_at:
                raise _RequestAborted()
        if "error" in outcome:
            raise outcome["error"]
        return outcome["response"]

    def refresh_tokens(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new access token.

        Not retried; the caller decides what a failed refresh means.

        Raises:
            SyncClientError: Non-2xx, network failure or malformed response
        """
        url = f"{self.api_url}/token/refresh"
        headers = self._get_headers()
        try:
            response = self._session.post(
                url, json={"refresh_token": refresh_token}, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise SyncClientError(f"Token refresh request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise SyncClientError(f"Token refresh failed ({response.status_code})")

        try:
            data = response.json()
        except ValueError as e:
            raise SyncClientError("Token refresh returned invalid JSON") from e

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token or not isinstance(access_token, str):
            raise SyncClientError("Token refresh response has no access_token")

        new_refresh = data.get("refresh_token")
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh if isinstance(new_refresh, str) and new_refresh else None,
        )

    def abort(self) -> None:
        """Cut off the request in flight and drop pooled connections."""
        with self._session_lock:
            self._abort_count += 1
            old = self._session
            if self._owns_session:
                self._session = requests.Session()
        if old is not None:
            old.close()
        logger.debug("HTTP session aborted")

    def close(self) -> None:
        """Close the private session, leaving an injected one open."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "SyncApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
