"""Tests for the application facade and command line."""

import json
import tempfile
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from wearsync.auth.keychain import StoredCredentials
from wearsync.config import Config, SyncSettings
from wearsync.main import SingleInstanceLock, WearSyncApp, build_parser, load_provider, main
from wearsync.sync.provider import QueryResult
from wearsync.sync.sync_engine import SyncOutcome


class StaticProvider:
    """Returns a single batch per type, then nothing."""

    def query(self, type_id, cursor, limit):
        if cursor:
            return QueryResult(cursor=cursor)
        return QueryResult(records=[{"type": type_id, "value": 1}], cursor="1")


class TestWearSyncApp:
    """Tests for WearSyncApp."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.config_path = self.temp_dir / "config.json"
        self.keychain = Mock()
        self.keychain.load.return_value = None
        self.keychain.store.return_value = True
        self.keychain.update_tokens.return_value = True
        self.client = Mock()
        self.scheduler = Mock()
        self.scheduler.running = False
        self.on_auth_error = Mock()
        self.app = WearSyncApp(
            config=Config(
                host="https://wear.example.com",
                tracked_types=["steps", "sleep"],
                sync=SyncSettings(outbox_min_age_seconds=0),
            ),
            provider=StaticProvider(),
            keychain=self.keychain,
            client=self.client,
            scheduler=self.scheduler,
            data_dir=self.temp_dir / "data",
            config_path=self.config_path,
            on_auth_error=self.on_auth_error,
            event_listener=Mock(),
        )

    def teardown_method(self):
        """Clean up."""
        self.app.shutdown()

    def signed_in(self, user_id="u1"):
        credentials = StoredCredentials(user_id=user_id, access_token="a", refresh_token="r")
        self.keychain.load.return_value = credentials
        return credentials

    def test_sign_in_requires_token_pair_or_api_key(self):
        assert self.app.sign_in("u1", access_token="a") is False
        self.keychain.store.assert_not_called()

    def test_sign_in_with_tokens(self):
        assert self.app.sign_in("u1", access_token="a", refresh_token="r") is True

        stored = self.keychain.store.call_args.args[0]
        assert stored.user_id == "u1"
        assert stored.is_api_key_auth is False

    def test_sign_in_with_api_key(self):
        assert self.app.sign_in("u1", api_key="k") is True

        stored = self.keychain.store.call_args.args[0]
        assert stored.is_api_key_auth is True
        assert stored.access_token is None

    def test_sign_in_clears_previous_user_data(self):
        self.signed_in("old")
        self.app.storage.save_cursor("user.old", "steps", "c1")
        self.app.storage.stage("steps", "user.old", b"{}")
        self.app.state_store.start_new("user.old", full_export=True)

        self.app.sign_in("new", api_key="k")

        assert self.app.storage.get_cursor("user.old", "steps") is None
        assert self.app.storage.outbox_size("user.old") == 0
        assert self.app.state_store.load("user.old") is None

    def test_sign_in_clears_data_of_incoming_user(self):
        self.app.storage.save_cursor("user.u1", "steps", "stale")

        self.app.sign_in("u1", api_key="k")

        assert self.app.storage.get_cursor("user.u1", "steps") is None

    def test_sign_out_forgets_everything(self):
        self.signed_in()
        self.app.config.sync_active = True
        self.app.storage.stage("steps", "user.u1", b"{}")

        self.app.sign_out()

        self.keychain.delete.assert_called_once()
        assert self.app.storage.outbox_size() == 0
        assert self.app.config.sync_active is False
        assert Config.load(self.config_path).sync_active is False

    def test_update_tokens_sweeps_outbox(self):
        self.signed_in()
        self.app.storage.stage("steps", "user.u1", b"{}", cursors={"steps": "c1"})

        assert self.app.update_tokens("a2", "r2") is True

        self.keychain.update_tokens.assert_called_once_with("a2", "r2")
        assert self.app.storage.outbox_size() == 0
        assert self.app.storage.get_cursor("user.u1", "steps") == "c1"

    def test_update_tokens_without_session(self):
        self.keychain.update_tokens.return_value = False

        assert self.app.update_tokens("a2") is False
        self.client.post_sync.assert_not_called()

    def test_restore_session(self):
        assert self.app.restore_session() is None

        self.signed_in()
        assert self.app.restore_session() == "u1"

    def test_get_stored_credentials(self):
        self.signed_in()

        creds = self.app.get_stored_credentials()

        assert creds["userId"] == "u1"
        assert creds["host"] == "https://wear.example.com"
        assert creds["isSyncActive"] is False

    def test_set_tracked_types_persists(self):
        result = self.app.set_tracked_types(["heartRate", "heartRate", "steps"])

        assert result == ["heartRate", "steps"]
        assert Config.load(self.config_path).tracked_types == ["heartRate", "steps"]

    def test_sync_now(self):
        self.signed_in()

        assert self.app.sync_now() == SyncOutcome.COMPLETED
        assert self.client.post_sync.call_count == 2

    def test_start_background_sync_marks_active(self):
        self.signed_in()

        assert self.app.start_background_sync() is True

        self.scheduler.start.assert_called_once()
        assert self.app.config.sync_active is True

    def test_start_background_sync_needs_types(self):
        self.signed_in()
        self.app.config.tracked_types = []

        assert self.app.start_background_sync() is False

    def test_start_restores_active_background_sync(self):
        self.signed_in()
        self.app.config.sync_active = True

        self.app.start()

        ids = [call.kwargs["id"] for call in self.scheduler.add_job.call_args_list]
        assert "outbox_sweep" in ids

    def test_get_status(self):
        status = self.app.get_status()

        assert status["signedIn"] is False
        assert status["trackedTypes"] == ["steps", "sleep"]
        assert status["isSyncActive"] is False

    def test_auth_error_is_forwarded(self):
        self.app.engine._handle_auth_error(401, "Session expired")
        self.on_auth_error.assert_called_once_with(401, "Session expired")

    def test_shutdown_is_idempotent(self):
        self.app.shutdown()
        self.app.shutdown()

        self.client.close.assert_called_once()


class TestSingleInstanceLock:
    """Tests for SingleInstanceLock."""

    def test_second_lock_fails(self):
        path = Path(tempfile.mkdtemp()) / ".wearsync.lock"
        first = SingleInstanceLock(path)
        second = SingleInstanceLock(path)

        assert first.acquire() is True
        try:
            assert second.acquire() is False
        finally:
            first.release()

        assert second.acquire() is True
        second.release()


class TestCommandLine:
    """Tests for the command line entry point."""

    def test_load_provider(self):
        provider = load_provider("collections:OrderedDict")
        assert provider == {}

    def test_load_provider_rejects_bad_reference(self):
        with pytest.raises(ValueError):
            load_provider("no_colon_here")

    def test_parser_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_sync_full_flag(self):
        args = build_parser().parse_args(["sync", "--full"])
        assert args.command == "sync"
        assert args.full is True

    def test_status_command(self, capsys):
        temp_dir = Path(tempfile.mkdtemp())
        with patch("wearsync.main.setup_logging"), patch(
            "wearsync.main.KeychainManager"
        ) as keychain_cls:
            keychain_cls.return_value.load.return_value = None
            code = main(
                [
                    "--config",
                    str(temp_dir / "config.json"),
                    "--data-dir",
                    str(temp_dir / "data"),
                    "status",
                ]
            )

        assert code == 0
        status = json.loads(capsys.readouterr().out)
        assert status["signedIn"] is False

    def test_bad_provider_exits(self, capsys):
        temp_dir = Path(tempfile.mkdtemp())
        with patch("wearsync.main.setup_logging"):
            code = main(
                ["--config", str(temp_dir / "c.json"), "--provider", "missing.module:x", "status"]
            )

        assert code == 2
        assert "Cannot load provider" in capsys.readouterr().err
