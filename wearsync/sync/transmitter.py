"""Chunk transmitter - durable outbox with at-least-once delivery.

Every chunk is staged in local storage before it goes on the wire and is
only removed once the server has answered 2xx. Acknowledging a chunk is
also the only place where per-type cursors move forward, so a crash at
any point either re-sends the chunk or has already recorded its effect.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from ..auth.keychain import KeychainManager
from ..auth.token_refresh import TokenRefreshCoordinator
from .http_client import SyncApiClient, SyncAuthError, SyncNetworkError, SyncRejectedError
from .payload import PayloadError, serialize_payload, summarize_payload
from .retry import BackoffTracker
from .storage import OutboxItem, StorageError, SyncStorage
from .types import short_type_name

__all__ = ["Chunk", "SendResult", "SweepStats", "ChunkTransmitter"]

logger = logging.getLogger(__name__)

AuthErrorCallback = Callable[[int, str], None]


class SendResult(Enum):
    """What happened to a chunk."""

    DELIVERED = "delivered"
    REJECTED = "rejected"  # permanent 4xx, chunk dropped
    FAILED = "failed"  # transient, chunk stays staged
    AUTH_FAILED = "auth_failed"
    CANCELLED = "cancelled"


@dataclass
class Chunk:
    """A bounded batch of records on its way to the server."""

    type_tag: str
    user_key: str
    payload: dict
    record_count: int = 0
    cursors: dict[str, str] = field(default_factory=dict)
    completes_full_export: bool = False


@dataclass
class SweepStats:
    """Statistics from an outbox sweep."""

    attempted: int = 0
    delivered: int = 0
    rejected: int = 0
    failed: int = 0
    skipped: bool = False


def _safe_call(callback: Optional[Callable], *args) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as e:
        logger.error(f"Transmitter callback failed: {e}", exc_info=True)


class ChunkTransmitter:
    """Stages, sends and reconciles chunks."""

    def __init__(
        self,
        storage: SyncStorage,
        client: SyncApiClient,
        keychain: KeychainManager,
        refresher: TokenRefreshCoordinator,
        min_age: float = 30,
        on_auth_error: Optional[AuthErrorCallback] = None,
        on_network_error: Optional[Callable[[], None]] = None,
        backoff: Optional[BackoffTracker] = None,
    ):
        """Initialize transmitter.

        Args:
            storage: Outbox and cursor store
            client: Collection API client
            keychain: Source of current credentials
            refresher: Shared token refresh coordinator
            min_age: Sweeps leave younger items to the sender that staged them
            on_auth_error: Called with (status_code, message) on unrecoverable auth failure
            on_network_error: Called after a transient delivery failure
            backoff: Hold-off between failing sweeps
        """
        self.storage = storage
        self.client = client
        self.keychain = keychain
        self.refresher = refresher
        self.min_age = min_age
        self.on_auth_error = on_auth_error
        self.on_network_error = on_network_error
        self.backoff = backoff or BackoffTracker(base_delay=60.0, max_delay=600.0)

        self._abort = threading.Event()
        self._sweep_lock = threading.Lock()
        self._in_flight_lock = threading.Lock()
        self._in_flight: set[str] = set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self) -> None:
        """Cancel in-flight deliveries. Staged items stay for the next run."""
        self._abort.set()
        self.client.abort()

    def reset_abort(self) -> None:
        self._abort.clear()

    def send(self, chunk: Chunk) -> SendResult:
        """Stage a chunk and deliver it."""
        if self.aborted:
            return SendResult.CANCELLED

        try:
            body = serialize_payload(chunk.payload)
        except PayloadError as e:
            # Retrying cannot fix an unserializable chunk.
            logger.error(f"{short_type_name(chunk.type_tag)}: dropping chunk: {e}")
            return SendResult.REJECTED

        try:
            item = self.storage.stage(
                type_tag=chunk.type_tag,
                user_key=chunk.user_key,
                payload=body,
                cursors=chunk.cursors,
                completes_full_export=chunk.completes_full_export,
            )
        except StorageError as e:
            logger.error(f"Failed to stage chunk for {short_type_name(chunk.type_tag)}: {e}")
            return SendResult.FAILED

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                f"{short_type_name(chunk.type_tag)}: sending {chunk.record_count} records, "
                f"{summarize_payload(body)}"
            )
        return self._deliver(item)

    def _deliver(self, item: OutboxItem) -> SendResult:
        with self._in_flight_lock:
            if item.item_id in self._in_flight:
                return SendResult.CANCELLED
            self._in_flight.add(item.item_id)
        try:
            return self._deliver_once(item, allow_refresh=True)
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(item.item_id)

    def _deliver_once(self, item: OutboxItem, allow_refresh: bool) -> SendResult:
        name = short_type_name(item.type_tag)
        credentials = self.keychain.load()
        if credentials is None or not credentials.has_auth:
            logger.warning("Not signed in - chunk left in outbox")
            return SendResult.AUTH_FAILED
        if credentials.user_key != item.user_key:
            logger.warning(f"Chunk belongs to {item.user_key}, not the signed-in user - skipping")
            return SendResult.CANCELLED

        try:
            self.client.post_sync(
                credentials.user_id,
                item.payload,
                credentials.credential,
                api_key_mode=credentials.is_api_key_auth,
                should_abort=self._abort.is_set,
            )
        except SyncAuthError as e:
            if credentials.is_api_key_auth:
                logger.error("API key rejected (401)")
                _safe_call(self.on_auth_error, e.status_code, "Unauthorized - invalid API key")
                return SendResult.AUTH_FAILED
            if allow_refresh:
                logger.info("Access token rejected (401), refreshing")
                if self.refresher.refresh():
                    return self._deliver_once(item, allow_refresh=False)
            logger.error("Session expired - please re-authenticate")
            _safe_call(self.on_auth_error, e.status_code, "Session expired - please re-authenticate")
            return SendResult.AUTH_FAILED
        except SyncRejectedError as e:
            logger.warning(f"{name}: chunk rejected ({e.status_code}), dropping: {e.detail}")
            try:
                self.storage.record_rejection(item, e.status_code, e.detail)
                self.storage.delete_item(item.item_id)
            except StorageError as se:
                logger.error(f"Failed to drop rejected chunk: {se}")
            return SendResult.REJECTED
        except SyncNetworkError as e:
            if self.aborted:
                logger.info(f"{name}: delivery cancelled")
                return SendResult.CANCELLED
            logger.warning(f"{name}: delivery failed, chunk kept in outbox: {e}")
            try:
                self.storage.increment_retry(item.item_id)
            except StorageError as se:
                logger.error(f"Failed to update retry count: {se}")
            _safe_call(self.on_network_error)
            return SendResult.FAILED

        try:
            self.storage.acknowledge(item)
        except StorageError as e:
            # Delivered but not recorded; the chunk will be sent again.
            logger.error(f"{name}: failed to acknowledge delivered chunk: {e}")
            return SendResult.FAILED
        return SendResult.DELIVERED

    def sweep(self, min_age: Optional[float] = None) -> SweepStats:
        """Re-deliver staged items for the signed-in user, oldest first.

        Stops at the first transient failure. After a failing sweep further
        sweeps are skipped until the backoff expires.
        """
        stats = SweepStats()
        if not self._sweep_lock.acquire(blocking=False):
            logger.debug("Outbox sweep already running")
            stats.skipped = True
            return stats

        try:
            if not self.backoff.ready():
                logger.debug(f"Outbox sweep backing off for {self.backoff.remaining():.0f}s")
                stats.skipped = True
                return stats

            credentials = self.keychain.load()
            if credentials is None or not credentials.has_auth:
                stats.skipped = True
                return stats

            age = self.min_age if min_age is None else min_age
            try:
                items = self.storage.pending_items(credentials.user_key, min_age=age)
            except StorageError as e:
                logger.error(f"Cannot read outbox: {e}")
                stats.skipped = True
                return stats

            if not items:
                return stats
            logger.info(f"Outbox sweep: {len(items)} pending items")

            for item in items:
                if self.aborted:
                    break
                if self._is_in_flight(item.item_id):
                    continue
                stats.attempted += 1
                result = self._deliver(item)
                if result == SendResult.DELIVERED:
                    stats.delivered += 1
                elif result == SendResult.REJECTED:
                    stats.rejected += 1
                elif result == SendResult.FAILED:
                    stats.failed += 1
                    delay = self.backoff.record_failure()
                    logger.info(f"Outbox sweep paused, next attempt in {delay:.0f}s")
                    break
                else:
                    break

            if stats.failed == 0 and stats.delivered:
                self.backoff.record_success()
            logger.info(
                f"Outbox sweep done: {stats.delivered} delivered, "
                f"{stats.rejected} rejected, {stats.failed} failed"
            )
            return stats
        finally:
            self._sweep_lock.release()

    def _is_in_flight(self, item_id: str) -> bool:
        with self._in_flight_lock:
            return item_id in self._in_flight

    def pending_count(self, user_key: str) -> int:
        try:
            return self.storage.outbox_size(user_key)
        except StorageError:
            return 0

    def clear(self, user_key: Optional[str] = None) -> int:
        """Drop staged items for a user (or everyone)."""
        return self.storage.clear_outbox(user_key)
