"""wearsync - Main entry point."""

import argparse
import importlib
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from . import __version__
from .auth import KeychainManager, StoredCredentials
from .config import Config, setup_logging
from .sync import SyncApiClient, SyncEngine, SyncOutcome, SyncStateStore, SyncStorage
from .sync.provider import DataProviderProtocol
from .sync.types import parse_tracked_types
from .system_events import start_system_event_listener

logger = logging.getLogger(__name__)

DB_FILE = "wearsync.db"


class WearSyncApp:
    """Application facade.

    Wires components together from Config, owns the scheduler and handles
    sign-in, background sync lifecycle and shutdown.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        provider: Optional[DataProviderProtocol] = None,
        keychain: Optional[KeychainManager] = None,
        client: Optional[SyncApiClient] = None,
        scheduler=None,
        data_dir: Optional[Path] = None,
        config_path: Optional[Path] = None,
        on_auth_error: Optional[Callable[[int, str], None]] = None,
        event_listener: Callable = start_system_event_listener,
    ):
        """Initialize the application.

        Args:
            config: Configuration (loaded from config_path when omitted)
            provider: Data source for sync runs
            keychain: Credential store
            client: Collection API client
            scheduler: APScheduler scheduler (a BackgroundScheduler by default)
            data_dir: Where the database and sync state live
            config_path: Config file to load and save
            on_auth_error: Called when the user has to sign in again
            event_listener: Starts OS network/lock listeners
        """
        self.config_path = config_path
        self.config = config or Config.load(config_path)
        self.data_dir = Path(data_dir) if data_dir else Config.get_data_dir()
        self.on_auth_error = on_auth_error

        self.keychain = keychain or KeychainManager()
        self.client = client or SyncApiClient(
            api_url=self.config.api_url,
            timeout=self.config.sync.request_timeout,
            compress=self.config.sync.compress,
        )
        self.storage = SyncStorage(self.data_dir / DB_FILE)
        self.state_store = SyncStateStore(self.data_dir)
        self.scheduler = scheduler or BackgroundScheduler()

        self.engine = SyncEngine(
            config=self.config,
            provider=provider,
            storage=self.storage,
            state_store=self.state_store,
            keychain=self.keychain,
            client=self.client,
            scheduler=self.scheduler,
            on_auth_error=self._on_auth_error,
            event_listener=event_listener,
        )

        self._closed = False
        self._stop_requested = threading.Event()

    # -- Session ----------------------------------------------------------

    def sign_in(
        self,
        user_id: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> bool:
        """Store credentials for a user, starting from a clean slate.

        Either an access/refresh token pair or an API key is required.
        """
        has_tokens = bool(access_token) and bool(refresh_token)
        if not has_tokens and not api_key:
            logger.error("Sign in requires (access_token + refresh_token) or api_key")
            return False

        credentials = StoredCredentials(
            user_id=user_id,
            access_token=access_token if has_tokens else None,
            refresh_token=refresh_token if has_tokens else None,
            api_key=api_key,
        )

        self.engine.stop_sync()
        previous = self.keychain.load()
        for user_key in {credentials.user_key, previous.user_key if previous else None} - {None}:
            self._clear_user_data(user_key)

        if not self.keychain.store(credentials):
            return False
        logger.info(f"Signed in: user {user_id}, mode={'token' if has_tokens else 'apiKey'}")
        return True

    def sign_out(self) -> None:
        """Stop syncing and forget the user and all of their local sync data."""
        logger.info("Signing out")
        self.engine.stop_background()
        credentials = self.keychain.load()
        if credentials:
            self._clear_user_data(credentials.user_key)
        self.keychain.delete()
        self._set_sync_active(False)
        logger.info("Sign out complete - all sync state reset")

    def _clear_user_data(self, user_key: str) -> None:
        self.state_store.clear(user_key)
        self.storage.clear_cursors(user_key)
        self.storage.clear_outbox(user_key)

    def update_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> bool:
        """Install tokens refreshed elsewhere and retry whatever is waiting in the outbox."""
        if not self.keychain.update_tokens(access_token, refresh_token):
            return False
        logger.info("Tokens updated")
        self.engine.sweep_outbox(min_age=0)
        return True

    def restore_session(self) -> Optional[str]:
        """User id of a stored session, if any."""
        credentials = self.keychain.load()
        if credentials and credentials.has_auth:
            logger.info(f"Session restored: user {credentials.user_id}")
            return credentials.user_id
        return None

    def get_stored_credentials(self) -> dict:
        credentials = self.keychain.load()
        return {
            "userId": credentials.user_id if credentials else None,
            "accessToken": credentials.access_token if credentials else None,
            "refreshToken": credentials.refresh_token if credentials else None,
            "apiKey": credentials.api_key if credentials else None,
            "host": self.config.host,
            "isSyncActive": self.config.sync_active,
        }

    # -- Configuration ----------------------------------------------------

    def set_tracked_types(self, types: Iterable[str]) -> list[str]:
        self.config.tracked_types = parse_tracked_types(types)
        self._save_config()
        logger.info(f"Tracking {len(self.config.tracked_types)} types")
        return self.config.tracked_types

    def _set_sync_active(self, active: bool) -> None:
        if self.config.sync_active != active:
            self.config.sync_active = active
            self._save_config()

    def _save_config(self) -> None:
        try:
            self.config.save(self.config_path)
        except OSError as e:
            logger.error(f"Failed to save config: {e}")

    # -- Sync -------------------------------------------------------------

    def start(self) -> None:
        """Start the scheduler and restore background sync if it was active."""
        if not self.scheduler.running:
            self.scheduler.start()
        if self.config.sync_active and self.restore_session():
            logger.info("Restoring background sync")
            self.engine.start_background()

    def start_background_sync(self) -> bool:
        if not self.engine.tracked_types():
            logger.warning("Cannot start background sync: no tracked types")
            return False
        if not self.engine.start_background():
            return False
        if not self.scheduler.running:
            self.scheduler.start()
        self._set_sync_active(True)
        return True

    def stop_background_sync(self) -> None:
        self.engine.stop_background()
        self._set_sync_active(False)

    def sync_now(self) -> SyncOutcome:
        return self.engine.sync_now()

    def resume_sync(self) -> SyncOutcome:
        return self.engine.resume_sync()

    def reset_progress(self) -> None:
        self.engine.reset_progress()

    def get_status(self) -> dict:
        status = self.engine.get_status()
        status["isSyncActive"] = self.config.sync_active
        status["trackedTypes"] = list(self.config.tracked_types)
        return status

    def _on_auth_error(self, status_code: int, message: str) -> None:
        if self.on_auth_error:
            self.on_auth_error(status_code, message)

    # -- Lifecycle --------------------------------------------------------

    def run(self) -> None:
        """Run background sync until interrupted."""
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, self._request_stop)

        self.start()
        if not self.config.sync_active and not self.start_background_sync():
            logger.error("Background sync could not start")
            return

        logger.info("wearsync running")
        try:
            self._stop_requested.wait()
        finally:
            self.shutdown()

    def _request_stop(self, signum, frame) -> None:
        logger.info(f"Stopping on signal {signal.Signals(signum).name}")
        self._stop_requested.set()

    def shutdown(self) -> None:
        """Stop syncing and release resources. Later calls do nothing."""
        if self._closed:
            return
        self._closed = True
        logger.info("Stopping wearsync")

        self.engine.stop_sync()
        self.engine.monitor.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.client.close()
        self.storage.close()

        logger.info("wearsync stopped")

    def __enter__(self) -> "WearSyncApp":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()


def _try_lock(handle) -> None:
    """Take a non-blocking exclusive lock on handle; OSError if it is held."""
    if sys.platform == "win32":
        import msvcrt
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    else:
        import fcntl
        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock(handle) -> None:
    if sys.platform == "win32":
        import msvcrt
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        import fcntl
        fcntl.flock(handle, fcntl.LOCK_UN)


class SingleInstanceLock:
    """Keeps a second wearsync process from syncing the same data dir.

    The lock file holds the owner's pid while the lock is held.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path else Config.get_data_dir() / ".wearsync.lock"
        self._handle = None

    def acquire(self) -> bool:
        """False if another process holds the lock."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle = self._path.open("a+")  # noqa: SIM115
        try:
            _try_lock(handle)
        except OSError:
            handle.close()
            return False

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            _unlock(handle)
        except OSError as e:
            logger.debug(f"Unlocking {self._path} failed: {e}")
        handle.close()
        self._path.unlink(missing_ok=True)

    def __enter__(self) -> "SingleInstanceLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def load_provider(reference: str) -> DataProviderProtocol:
    """Build a provider from a "package.module:factory" reference."""
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Provider must look like 'module:factory', got '{reference}'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    return factory()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wearsync", description="Resumable wearable data sync")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="Config file path")
    parser.add_argument("--data-dir", type=Path, help="Directory for sync state and outbox")
    parser.add_argument("--provider", help="Data provider as module:factory")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("status", help="Show sync status")
    sync = commands.add_parser("sync", help="Sync now")
    sync.add_argument("--full", action="store_true", help="Full export instead of incremental")
    commands.add_parser("resume", help="Resume an interrupted sync")
    commands.add_parser("reset", help="Forget cursors and sync progress")
    commands.add_parser("run", help="Run background sync until interrupted")

    sign_in = commands.add_parser("sign-in", help="Store credentials")
    sign_in.add_argument("--user-id", required=True)
    sign_in.add_argument("--access-token")
    sign_in.add_argument("--refresh-token")
    sign_in.add_argument("--api-key")
    commands.add_parser("sign-out", help="Forget credentials and local sync data")

    track = commands.add_parser("track", help="Set the tracked data types")
    track.add_argument("types", nargs="+")
    return parser


# Commands that drive sync state and must not run twice at once.
_LOCKED_COMMANDS = {"sync", "resume", "reset", "run", "sign-in", "sign-out"}


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    config = Config.load(args.config)
    setup_logging(args.debug or config.debug_mode)

    provider = None
    if args.provider:
        try:
            provider = load_provider(args.provider)
        except (ImportError, AttributeError, ValueError) as e:
            print(f"Cannot load provider: {e}", file=sys.stderr)
            return 2

    lock = SingleInstanceLock(args.data_dir / ".wearsync.lock" if args.data_dir else None)
    if args.command in _LOCKED_COMMANDS and not lock.acquire():
        print("wearsync is already running.", file=sys.stderr)
        return 1

    try:
        with WearSyncApp(
            config=config,
            provider=provider,
            data_dir=args.data_dir,
            config_path=args.config,
        ) as app:
            return _dispatch(app, args)
    finally:
        lock.release()


def _dispatch(app: WearSyncApp, args: argparse.Namespace) -> int:
    if args.command == "status":
        print(json.dumps(app.get_status(), indent=2))
        return 0
    if args.command == "sync":
        outcome = app.engine.start_sync(full_export=args.full)
        print(outcome.value)
        return 0 if outcome == SyncOutcome.COMPLETED else 1
    if args.command == "resume":
        outcome = app.resume_sync()
        print(outcome.value)
        return 0 if outcome in (SyncOutcome.COMPLETED, SyncOutcome.NOTHING_TO_RESUME) else 1
    if args.command == "reset":
        app.reset_progress()
        return 0
    if args.command == "run":
        app.run()
        return 0
    if args.command == "sign-in":
        ok = app.sign_in(args.user_id, args.access_token, args.refresh_token, args.api_key)
        return 0 if ok else 1
    if args.command == "sign-out":
        app.sign_out()
        return 0
    if args.command == "track":
        print(", ".join(app.set_tracked_types(args.types)))
        return 0
    return 2


if __name__ == "__main__":
    sys.exit(main())
