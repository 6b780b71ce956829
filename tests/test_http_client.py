"""Tests for the collection API client."""

import gzip
import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests
import responses

from wearsync.sync.http_client import (
    API_KEY_HEADER,
    SyncApiClient,
    SyncAuthError,
    SyncClientError,
    SyncNetworkError,
    SyncRejectedError,
)
from wearsync.sync.retry import RetryConfig

API_URL = "https://wear.example.com/api/v1"
SYNC_URL = f"{API_URL}/sdk/users/u1/sync"
REFRESH_URL = f"{API_URL}/token/refresh"

FAST_RETRY = RetryConfig(max_retries=2, base_delay=0.0, jitter=False)


class TestHeaders:
    """Tests for header construction."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = SyncApiClient(api_url=API_URL + "/")

    def teardown_method(self):
        """Clean up."""
        self.client.close()

    def test_trailing_slash_is_stripped(self):
        assert self.client.sync_url("u1") == SYNC_URL

    def test_bearer_prefix_added(self):
        headers = self.client._get_headers("tok")
        assert headers["Authorization"] == "Bearer tok"
        assert API_KEY_HEADER not in headers

    def test_existing_bearer_prefix_kept(self):
        headers = self.client._get_headers("Bearer tok")
        assert headers["Authorization"] == "Bearer tok"

    def test_api_key_mode(self):
        headers = self.client._get_headers("key-123", api_key_mode=True)
        assert headers[API_KEY_HEADER] == "key-123"
        assert "Authorization" not in headers

    def test_no_credential(self):
        headers = self.client._get_headers()
        assert "Authorization" not in headers
        assert headers["User-Agent"].startswith("wearsync/")


class TestPostSync:
    """Tests for chunk delivery and response classification."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = SyncApiClient(api_url=API_URL, retry_config=FAST_RETRY)

    def teardown_method(self):
        """Clean up."""
        self.client.close()

    @responses.activate
    def test_success(self):
        responses.add(responses.POST, SYNC_URL, json={"ok": True}, status=200)

        self.client.post_sync("u1", b'{"data":{}}', "tok")

        assert len(responses.calls) == 1
        request = responses.calls[0].request
        assert request.body == b'{"data":{}}'
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.headers["Content-Type"] == "application/json"

    @responses.activate
    def test_compressed_body(self):
        responses.add(responses.POST, SYNC_URL, status=202)
        client = SyncApiClient(api_url=API_URL, compress=True, retry_config=FAST_RETRY)

        client.post_sync("u1", b'{"data":{"records":[]}}', "tok")

        request = responses.calls[0].request
        assert request.headers["Content-Encoding"] == "gzip"
        assert json.loads(gzip.decompress(request.body)) == {"data": {"records": []}}
        client.close()

    @responses.activate
    def test_401_raises_auth_error_without_retry(self):
        responses.add(responses.POST, SYNC_URL, json={"detail": "expired"}, status=401)

        with pytest.raises(SyncAuthError, match="expired"):
            self.client.post_sync("u1", b"{}", "tok")

        assert len(responses.calls) == 1

    @responses.activate
    def test_4xx_raises_rejected_with_detail(self):
        responses.add(responses.POST, SYNC_URL, json={"message": "bad payload"}, status=422)

        with pytest.raises(SyncRejectedError) as exc_info:
            self.client.post_sync("u1", b"{}", "tok")

        assert exc_info.value.status_code == 422
        assert exc_info.value.detail == "bad payload"
        assert len(responses.calls) == 1

    @responses.activate
    def test_5xx_is_retried_then_network_error(self):
        responses.add(responses.POST, SYNC_URL, status=503)

        with pytest.raises(SyncNetworkError, match="503"):
            self.client.post_sync("u1", b"{}", "tok")

        assert len(responses.calls) == FAST_RETRY.max_retries + 1

    @responses.activate
    def test_5xx_then_success(self):
        responses.add(responses.POST, SYNC_URL, status=500)
        responses.add(responses.POST, SYNC_URL, status=200)

        self.client.post_sync("u1", b"{}", "tok")

        assert len(responses.calls) == 2

    @responses.activate
    def test_connection_error_becomes_network_error(self):
        responses.add(
            responses.POST, SYNC_URL, body=requests.exceptions.ConnectionError("refused")
        )

        with pytest.raises(SyncNetworkError, match="Cannot connect"):
            self.client.post_sync("u1", b"{}", "tok")

    @responses.activate
    def test_timeout_becomes_network_error(self):
        responses.add(responses.POST, SYNC_URL, body=requests.exceptions.Timeout("slow"))

        with pytest.raises(SyncNetworkError, match="timed out"):
            self.client.post_sync("u1", b"{}", "tok")

    @responses.activate
    def test_abort_stops_retrying(self):
        responses.add(responses.POST, SYNC_URL, status=503)
        client = SyncApiClient(
            api_url=API_URL,
            retry_config=RetryConfig(max_retries=5, base_delay=0.5, jitter=False),
        )

        with pytest.raises(SyncNetworkError, match="Aborted"):
            client.post_sync("u1", b"{}", "tok", should_abort=lambda: True)

        assert len(responses.calls) == 1
        client.close()

    def test_network_error_is_client_error(self):
        assert issubclass(SyncNetworkError, SyncClientError)
        assert issubclass(SyncAuthError, SyncClientError)
        assert issubclass(SyncRejectedError, SyncClientError)


class TestRefreshTokens:
    """Tests for token refresh."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = SyncApiClient(api_url=API_URL, retry_config=FAST_RETRY)

    def teardown_method(self):
        """Clean up."""
        self.client.close()

    @responses.activate
    def test_refresh_returns_token_pair(self):
        responses.add(
            responses.POST,
            REFRESH_URL,
            json={"access_token": "new-access", "refresh_token": "new-refresh"},
            status=200,
        )

        pair = self.client.refresh_tokens("old-refresh")

        assert pair.access_token == "new-access"
        assert pair.refresh_token == "new-refresh"
        assert json.loads(responses.calls[0].request.body) == {"refresh_token": "old-refresh"}

    @responses.activate
    def test_refresh_without_new_refresh_token(self):
        responses.add(responses.POST, REFRESH_URL, json={"access_token": "a"}, status=200)

        pair = self.client.refresh_tokens("r")

        assert pair.refresh_token is None

    @responses.activate
    def test_refresh_failure_status(self):
        responses.add(responses.POST, REFRESH_URL, status=401)

        with pytest.raises(SyncClientError, match="401"):
            self.client.refresh_tokens("r")

        assert len(responses.calls) == 1

    @responses.activate
    def test_refresh_missing_access_token(self):
        responses.add(responses.POST, REFRESH_URL, json={"token": "x"}, status=200)

        with pytest.raises(SyncClientError, match="access_token"):
            self.client.refresh_tokens("r")

    @responses.activate
    def test_refresh_invalid_json(self):
        responses.add(responses.POST, REFRESH_URL, body="<html>", status=200)

        with pytest.raises(SyncClientError, match="invalid JSON"):
            self.client.refresh_tokens("r")

    @responses.activate
    def test_refresh_network_error(self):
        responses.add(
            responses.POST, REFRESH_URL, body=requests.exceptions.ConnectionError("down")
        )

        with pytest.raises(SyncClientError, match="request failed"):
            self.client.refresh_tokens("r")


class TestAbort:
    """Tests for aborting in-flight work."""

    @responses.activate
    def test_abort_replaces_owned_session(self):
        client = SyncApiClient(api_url=API_URL)
        old_session = client._session

        client.abort()

        assert client._session is not old_session
        client.close()

    def test_abort_keeps_injected_session(self):
        session = requests.Session()
        client = SyncApiClient(api_url=API_URL, session=session)

        client.abort()

        assert client._session is session

    def test_context_manager_closes_owned_session(self):
        with SyncApiClient(api_url=API_URL) as client:
            assert client._session is not None
        assert client._session is None

    @responses.activate
    def test_abort_before_request_does_not_cancel_it(self):
        responses.add(responses.POST, SYNC_URL, status=200)
        client = SyncApiClient(api_url=API_URL, retry_config=FAST_RETRY)

        client.abort()
        client.post_sync("u1", b"{}", "tok")

        assert len(responses.calls) == 1
        client.close()


class SlowHandler(BaseHTTPRequestHandler):
    """Answers POSTs only after a delay."""

    delay = 3.0

    def do_POST(self):
        self.rfile.read(int(self.headers.get("Content-Length", 0)))
        time.sleep(self.delay)
        try:
            self.send_response(200)
            self.end_headers()
        except OSError:
            pass

    def log_message(self, format, *args):
        pass


class TestAbortInFlight:
    """Tests for aborting a request the server has not answered yet."""

    def setup_method(self):
        """Set up test fixtures."""
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), SlowHandler)
        threading.Thread(target=self.server.serve_forever, daemon=True).start()
        host, port = self.server.server_address
        self.session = requests.Session()
        self.session.trust_env = False  # no proxies for the local server
        self.client = SyncApiClient(
            api_url=f"http://{host}:{port}/api/v1", retry_config=FAST_RETRY, session=self.session
        )

    def teardown_method(self):
        """Clean up."""
        self.session.close()
        self.server.shutdown()
        self.server.server_close()

    def test_abort_cuts_off_request_in_flight(self):
        timer = threading.Timer(0.3, self.client.abort)
        timer.start()
        started = time.monotonic()

        with pytest.raises(SyncNetworkError, match="Aborted"):
            self.client.post_sync("u1", b"{}", "tok")

        assert time.monotonic() - started < 2.0
        timer.join()
