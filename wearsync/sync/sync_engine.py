"""Sync engine - orchestrates streaming sync from the data provider to the server."""

import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..auth.keychain import KeychainManager, StoredCredentials
from ..auth.token_refresh import TokenRefreshCoordinator
from ..config import Config
from ..system_events import probe_target, start_system_event_listener
from .budget import DeadlineBudget, ExecutionBudget, UnlimitedBudget
from .http_client import SyncApiClient
from .monitor import ConnectivityMonitor
from .provider import DataProviderProtocol, ProviderAdapter
from .puller import TypeOutcome, TypePuller
from .state import SyncStateStore
from .storage import StorageError, SyncStorage
from .transmitter import ChunkTransmitter, SweepStats
from .types import parse_tracked_types, queryable_types, short_type_name

__all__ = ["SyncEngine", "SyncOutcome"]

logger = logging.getLogger(__name__)

DEBOUNCE_JOB = "debounced_sync"
SWEEP_JOB = "outbox_sweep"
KICKOFF_JOB = "initial_sync"
FULL_EXPORT_JOB = "full_export"


class SyncOutcome(Enum):
    """Result of a sync attempt."""

    COMPLETED = "completed"
    INCOMPLETE = "incomplete"  # paused with state intact, resumable
    ALREADY_RUNNING = "already_running"
    AUTH_FAILED = "auth_failed"
    NOT_READY = "not_ready"  # not signed in or nothing to track
    NOTHING_TO_RESUME = "nothing_to_resume"


class SyncEngine:
    """Core engine that drives tracked types through the puller and transmitter.

    At most one sync runs at a time. A run works through the tracked types
    in order, skipping types the current session already completed, and
    stops with its session intact when the network, the budget, the data
    source or a cancel request gets in the way. The session is deleted only
    once every type is complete.
    """

    def __init__(
        self,
        config: Config,
        provider: Optional[DataProviderProtocol],
        storage: SyncStorage,
        state_store: SyncStateStore,
        keychain: KeychainManager,
        client: SyncApiClient,
        scheduler,
        on_auth_error: Optional[Callable[[int, str], None]] = None,
        event_listener: Callable = start_system_event_listener,
    ):
        """Initialize engine.

        Args:
            config: App configuration (tracked types, timings, chunk sizes)
            provider: Data source; without one every run is NOT_READY
            storage: Outbox, cursor and flag store
            state_store: Per-user session state
            keychain: Credential store
            client: Collection API client
            scheduler: APScheduler scheduler for debounced and delayed work
            on_auth_error: Called with (status_code, message) when re-authentication is needed
            event_listener: Starts OS network/lock listeners for the monitor
        """
        self.config = config
        self.settings = config.sync
        self.provider = provider if isinstance(provider, ProviderAdapter) else ProviderAdapter(provider)
        self.storage = storage
        self.state_store = state_store
        self.keychain = keychain
        self.client = client
        self.scheduler = scheduler
        self.on_auth_error = on_auth_error

        host, port = probe_target(config.host)
        self.monitor = ConnectivityMonitor(
            scheduler,
            on_network_restored=self._on_network_restored,
            on_data_available=self._on_data_available,
            network_settle=self.settings.network_settle_seconds,
            unlock_settle=self.settings.unlock_settle_seconds,
            probe_host=host,
            probe_port=port,
            listener=event_listener,
        )
        self.refresher = TokenRefreshCoordinator(keychain, client)
        self.transmitter = ChunkTransmitter(
            storage,
            client,
            keychain,
            self.refresher,
            min_age=self.settings.outbox_min_age_seconds,
            on_auth_error=self._handle_auth_error,
            on_network_error=self.monitor.mark_network_error,
        )
        self.puller = TypePuller(self.provider, self.transmitter, state_store, storage)

        self._sync_lock = threading.Lock()
        self._is_syncing = False
        self._cancel_lock = threading.Lock()
        self._cancelled = False
        self._initial_sync_in_progress = False

    @property
    def is_syncing(self) -> bool:
        with self._sync_lock:
            return self._is_syncing

    @property
    def initial_sync_in_progress(self) -> bool:
        return self._initial_sync_in_progress

    def _is_cancelled(self) -> bool:
        with self._cancel_lock:
            return self._cancelled

    def _credentials(self) -> Optional[StoredCredentials]:
        credentials = self.keychain.load()
        if credentials is None or not credentials.has_auth:
            return None
        return credentials

    def tracked_types(self) -> list[str]:
        return queryable_types(parse_tracked_types(self.config.tracked_types))

    # Sync runs

    def start_sync(
        self,
        full_export: bool = False,
        background: bool = False,
        budget: Optional[ExecutionBudget] = None,
    ) -> SyncOutcome:
        """Run a sync, resuming the current session if it has progress.

        Args:
            full_export: Read every type from the beginning (ignored when resuming)
            background: Run under a deadline budget with small chunks
            budget: Explicit budget; overrides background
        """
        with self._sync_lock:
            if self._is_syncing:
                logger.info("Sync already in progress")
                return SyncOutcome.ALREADY_RUNNING
            self._is_syncing = True

        with self._cancel_lock:
            self._cancelled = False
        self.transmitter.reset_abort()

        if budget is None:
            budget = (
                DeadlineBudget(self.settings.background_budget_seconds)
                if background
                else UnlimitedBudget()
            )

        try:
            return self._run(full_export, budget)
        except (StorageError, OSError) as e:
            logger.error(f"Sync aborted, local storage failed: {e}")
            return SyncOutcome.INCOMPLETE
        finally:
            self._initial_sync_in_progress = False
            with self._cancel_lock:
                self._cancelled = False
            with self._sync_lock:
                self._is_syncing = False

    def _run(self, full_export: bool, budget: ExecutionBudget) -> SyncOutcome:
        credentials = self._credentials()
        if credentials is None:
            logger.warning("Not signed in - sync skipped")
            return SyncOutcome.NOT_READY

        if not self.provider.available:
            logger.warning("No data provider configured - sync skipped")
            return SyncOutcome.NOT_READY

        types = self.tracked_types()
        if not types:
            logger.warning("No tracked types - sync skipped")
            return SyncOutcome.NOT_READY

        user_key = credentials.user_key
        state = self.state_store.load(user_key)
        if state is not None and state.has_progress:
            full_export = state.full_export
            start_index = min(self.state_store.resume_type_index(user_key), len(types) - 1)
            logger.info(
                f"Resuming sync session ({state.total_sent_count} sent, "
                f"{len(state.completed_types)} types complete)"
            )
        else:
            if not full_export and not self.storage.is_full_export_done(user_key):
                logger.info("No completed full export for this user - forcing full export")
                full_export = True
            self.state_store.start_new(user_key, full_export)
            start_index = 0

        self._initial_sync_in_progress = full_export and not self.storage.is_full_export_done(
            user_key
        )

        chunk_limit = self.settings.chunk_limit(budget.constrained)
        order = list(range(start_index, len(types))) + list(range(start_index))
        logger.info(
            f"Starting {'full export' if full_export else 'incremental sync'} "
            f"of {len(types)} types (chunk size {chunk_limit})"
        )

        for index in order:
            type_id = types[index]
            if self._is_cancelled():
                logger.info("Sync cancelled")
                return SyncOutcome.INCOMPLETE
            if not self.state_store.should_sync_type(user_key, type_id):
                continue

            self.state_store.update_current_type_index(user_key, index)
            outcome = self.puller.drain(
                user_key,
                type_id,
                full_export,
                chunk_limit,
                budget=budget,
                is_cancelled=self._is_cancelled,
            )

            if outcome == TypeOutcome.COMPLETE:
                continue
            if outcome == TypeOutcome.AUTH_FAILED:
                return SyncOutcome.AUTH_FAILED
            if outcome == TypeOutcome.UNAVAILABLE:
                self.monitor.defer_until_available()
            logger.info(f"Sync paused at {short_type_name(type_id)} ({outcome.value})")
            return SyncOutcome.INCOMPLETE

        return self._finalize(user_key, full_export)

    def _finalize(self, user_key: str, full_export: bool) -> SyncOutcome:
        state = self.state_store.load(user_key)
        total = state.total_sent_count if state else 0
        if full_export:
            self.storage.set_full_export_done(user_key)
        self.state_store.clear(user_key)
        logger.info(
            f"{'Full export' if full_export else 'Incremental sync'} complete: {total} records sent"
        )
        return SyncOutcome.COMPLETED

    def sync_now(self) -> SyncOutcome:
        return self.start_sync(full_export=False)

    def has_resumable_session(self) -> bool:
        credentials = self._credentials()
        if credentials is None:
            return False
        return self.state_store.has_resumable_session(credentials.user_key)

    def resume_sync(self) -> SyncOutcome:
        """Continue an interrupted session, if there is one."""
        if not self.has_resumable_session():
            logger.info("No resumable sync session")
            return SyncOutcome.NOTHING_TO_RESUME
        return self.start_sync()

    def stop_sync(self) -> None:
        """Ask the running sync to stop and abort in-flight requests."""
        with self._cancel_lock:
            self._cancelled = True
        self._remove_job(DEBOUNCE_JOB)
        if self.is_syncing:
            self.transmitter.abort()
            logger.info("Sync stop requested")

    def reset_progress(self) -> None:
        """Forget cursors, the full-export flag, the session and the outbox."""
        if self.is_syncing:
            self.stop_sync()

        credentials = self._credentials()
        if credentials is None:
            return
        user_key = credentials.user_key
        self.storage.clear_cursors(user_key)
        self.storage.set_full_export_done(user_key, False)
        self.state_store.clear(user_key)
        self.transmitter.clear(user_key)
        logger.info("Sync progress reset")

        if self.config.sync_active and self.scheduler.running:
            self.scheduler.add_job(
                self._run_job,
                trigger=DateTrigger(run_date=datetime.now()),
                args=[lambda: self.start_sync(full_export=True)],
                id=FULL_EXPORT_JOB,
                replace_existing=True,
            )

    def get_status(self) -> dict:
        credentials = self._credentials()
        user_key = credentials.user_key if credentials else None
        status = (
            self.state_store.status(user_key)
            if user_key
            else {
                "hasResumableSession": False,
                "sentCount": 0,
                "completedTypes": 0,
                "isFullExport": False,
                "createdAt": None,
            }
        )
        status.update(
            {
                "isSyncing": self.is_syncing,
                "signedIn": credentials is not None,
                "outboxSize": self.transmitter.pending_count(user_key) if user_key else 0,
                "fullExportDone": bool(user_key) and self.storage.is_full_export_done(user_key),
                "network": self.monitor.network_state.value,
                "dataAvailability": self.monitor.data_availability.value,
            }
        )
        return status

    # Triggers

    def trigger_sync(self, reason: str = "change") -> None:
        """Request a sync soon; bursts of triggers collapse into one run."""
        if self._initial_sync_in_progress:
            logger.debug(f"Initial sync running, ignoring trigger ({reason})")
            return
        if not self.scheduler.running:
            return
        self.scheduler.add_job(
            self._run_job,
            trigger=DateTrigger(
                run_date=datetime.now() + timedelta(seconds=self.settings.debounce_seconds)
            ),
            args=[self.start_sync],
            id=DEBOUNCE_JOB,
            replace_existing=True,
        )
        logger.debug(f"Sync scheduled ({reason})")

    def sweep_outbox(self, min_age: Optional[float] = None) -> SweepStats:
        if not self.is_syncing:
            self.transmitter.reset_abort()
        return self.transmitter.sweep(min_age=min_age)

    def start_background(self) -> bool:
        """Start the periodic outbox sweep, the monitor and an initial sync."""
        if self._credentials() is None:
            logger.warning("Cannot start background sync: not signed in")
            return False

        self.monitor.start()
        self.scheduler.add_job(
            self._run_job,
            trigger=IntervalTrigger(seconds=self.settings.outbox_sweep_interval_seconds),
            args=[self._periodic],
            id=SWEEP_JOB,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._run_job,
            trigger=DateTrigger(run_date=datetime.now()),
            args=[self.start_sync],
            id=KICKOFF_JOB,
            replace_existing=True,
        )
        logger.info(
            f"Background sync started (outbox sweep every "
            f"{self.settings.outbox_sweep_interval_seconds}s)"
        )
        return True

    def stop_background(self) -> None:
        for job_id in (SWEEP_JOB, KICKOFF_JOB, DEBOUNCE_JOB, FULL_EXPORT_JOB):
            self._remove_job(job_id)
        self.monitor.stop()
        self.stop_sync()
        logger.info("Background sync stopped")

    def _periodic(self) -> None:
        self.sweep_outbox()
        self._resume_if_idle("periodic")

    def _on_network_restored(self) -> None:
        self.sweep_outbox()
        self._resume_if_idle("network restored")

    def _on_data_available(self) -> None:
        self._resume_if_idle("data available")

    def _resume_if_idle(self, reason: str) -> None:
        if self.is_syncing or not self.has_resumable_session():
            return
        logger.info(f"Resuming sync ({reason})")
        self.start_sync()

    def _handle_auth_error(self, status_code: int, message: str) -> None:
        logger.error(f"Authentication failed ({status_code}): {message}")
        if self.on_auth_error:
            self.on_auth_error(status_code, message)

    def _remove_job(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    @staticmethod
    def _run_job(fn: Callable) -> None:
        """Scheduler entry point; keeps a failing run from killing the worker."""
        try:
            fn()
        except Exception:
            logger.exception("Scheduled sync job failed")
