"""Connectivity and data availability monitor.

Turns raw network and lock/unlock signals into debounced resume requests.
The monitor never touches sync state itself; it only schedules the
callbacks the orchestrator gave it, and those re-check whether a resume
makes sense when they run.
"""

import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger

from ..system_events import start_system_event_listener

__all__ = ["ConnectivityMonitor", "NetworkState", "DataAvailability"]

logger = logging.getLogger(__name__)

NETWORK_RESUME_JOB = "network_resume"
UNLOCK_RESUME_JOB = "unlock_resume"


class NetworkState(Enum):
    UNKNOWN = "unknown"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class DataAvailability(Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class ConnectivityMonitor:
    """Schedules resume callbacks when the network or the data comes back."""

    def __init__(
        self,
        scheduler,
        on_network_restored: Callable[[], None],
        on_data_available: Callable[[], None],
        network_settle: float = 2.0,
        unlock_settle: float = 1.0,
        probe_host: str = "127.0.0.1",
        probe_port: int = 443,
        listener: Callable = start_system_event_listener,
    ):
        """Initialize monitor.

        Args:
            scheduler: APScheduler scheduler that runs the delayed callbacks
            on_network_restored: Called once the network has been back for network_settle seconds
            on_data_available: Called unlock_settle seconds after data became readable again
            network_settle: Delay after reconnecting, in seconds
            unlock_settle: Delay after unlocking, in seconds
            probe_host: Host watched by the OS listeners
            probe_port: Port used when polling the host
            listener: Starts the OS listeners (replaceable for tests)
        """
        self.scheduler = scheduler
        self.on_network_restored = on_network_restored
        self.on_data_available = on_data_available
        self.network_settle = network_settle
        self.unlock_settle = unlock_settle
        self.probe_host = probe_host
        self.probe_port = probe_port
        self._listener = listener

        self._lock = threading.Lock()
        self._network = NetworkState.UNKNOWN
        self._availability = DataAvailability.AVAILABLE
        self._resume_deferred = False
        self._stop_event: Optional[threading.Event] = None

    @property
    def network_state(self) -> NetworkState:
        with self._lock:
            return self._network

    @property
    def data_availability(self) -> DataAvailability:
        with self._lock:
            return self._availability

    @property
    def resume_deferred(self) -> bool:
        with self._lock:
            return self._resume_deferred

    def start(self) -> None:
        """Start the OS listeners."""
        if self._stop_event is not None:
            return
        self._stop_event = threading.Event()
        self._listener(
            on_network_change=self.on_network_change,
            on_data_availability_change=self.on_data_availability_change,
            host=self.probe_host,
            port=self.probe_port,
            stop_event=self._stop_event,
        )
        logger.info("Connectivity monitor started")

    def stop(self) -> None:
        """Stop listening, drop pending resumes and forget observed state."""
        if self._stop_event is not None:
            self._stop_event.set()
            self._stop_event = None
        self._remove_job(NETWORK_RESUME_JOB)
        self._remove_job(UNLOCK_RESUME_JOB)
        with self._lock:
            self._network = NetworkState.UNKNOWN
            self._availability = DataAvailability.AVAILABLE
            self._resume_deferred = False
        logger.info("Connectivity monitor stopped")

    def on_network_change(self, online: bool) -> None:
        with self._lock:
            previous = self._network
            self._network = NetworkState.CONNECTED if online else NetworkState.DISCONNECTED

        if not online:
            if previous != NetworkState.DISCONNECTED:
                logger.info("Network lost")
            self._remove_job(NETWORK_RESUME_JOB)
        elif previous == NetworkState.DISCONNECTED:
            logger.info(f"Network restored, resuming in {self.network_settle:.0f}s")
            self._schedule(NETWORK_RESUME_JOB, self.network_settle, self.on_network_restored)

    def mark_network_error(self) -> None:
        """A request failed for network reasons; expect a reconnect."""
        with self._lock:
            self._network = NetworkState.DISCONNECTED

    def defer_until_available(self) -> None:
        """Resume once the data source becomes readable again."""
        with self._lock:
            self._resume_deferred = True
            self._availability = DataAvailability.UNAVAILABLE
        logger.info("Sync deferred until data is available")

    def on_data_availability_change(self, available: bool) -> None:
        with self._lock:
            previous = self._availability
            self._availability = (
                DataAvailability.AVAILABLE if available else DataAvailability.UNAVAILABLE
            )
            restored = available and previous == DataAvailability.UNAVAILABLE
            if restored:
                self._resume_deferred = False

        if restored:
            logger.info(f"Data available again, resuming in {self.unlock_settle:.0f}s")
            self._schedule(UNLOCK_RESUME_JOB, self.unlock_settle, self.on_data_available)

    def _schedule(self, job_id: str, delay: float, callback: Callable[[], None]) -> None:
        if not self.scheduler.running:
            logger.debug(f"Scheduler not running, dropping {job_id}")
            return
        self.scheduler.add_job(
            _safe_call,
            trigger=DateTrigger(run_date=datetime.now() + timedelta(seconds=delay)),
            args=[callback],
            id=job_id,
            replace_existing=True,
        )

    def _remove_job(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass


def _safe_call(fn: Callable[[], None]) -> None:
    try:
        fn()
    except Exception:
        logger.exception("Resume callback failed")
