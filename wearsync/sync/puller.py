"""Per-type streaming puller."""

import logging
from enum import Enum
from typing import Callable, Optional

from .budget import ExecutionBudget, UnlimitedBudget
from .payload import build_payload
from .provider import DataUnavailableError, ProviderAdapter, ProviderError
from .state import SyncStateStore
from .storage import SyncStorage
from .transmitter import Chunk, ChunkTransmitter, SendResult
from .types import short_type_name

__all__ = ["TypePuller", "TypeOutcome"]

logger = logging.getLogger(__name__)


class TypeOutcome(Enum):
    """How draining a type ended."""

    COMPLETE = "complete"
    PAUSED = "paused"  # network failure or budget exhausted
    UNAVAILABLE = "unavailable"  # data locked, retry when available
    AUTH_FAILED = "auth_failed"
    CANCELLED = "cancelled"


class TypePuller:
    """Drains one type from the provider, one bounded chunk at a time.

    Only one chunk is held in memory. After each delivered chunk the
    session records the chunk's cursor, so an interrupted type resumes
    after the last acknowledged chunk rather than from the start.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        transmitter: ChunkTransmitter,
        state_store: SyncStateStore,
        storage: SyncStorage,
    ):
        self.provider = provider
        self.transmitter = transmitter
        self.state_store = state_store
        self.storage = storage

    def start_cursor(self, user_key: str, type_id: str, full_export: bool) -> Optional[str]:
        """Where to continue reading a type."""
        state = self.state_store.load(user_key)
        pending = state.pending_cursor(type_id) if state else None
        if pending is not None:
            return pending
        if full_export:
            return None
        return self.storage.get_cursor(user_key, type_id)

    def _complete(self, user_key: str, type_id: str) -> TypeOutcome:
        self.state_store.update_type_progress(user_key, type_id, is_complete=True)
        return TypeOutcome.COMPLETE

    def drain(
        self,
        user_key: str,
        type_id: str,
        full_export: bool,
        chunk_limit: int,
        budget: Optional[ExecutionBudget] = None,
        is_cancelled: Callable[[], bool] = lambda: False,
    ) -> TypeOutcome:
        """Pull and send a type until it is exhausted or something stops us.

        Raises:
            StorageError: Local storage failed
            OSError: Session state could not be written
        """
        budget = budget or UnlimitedBudget()
        name = short_type_name(type_id)
        cursor = self.start_cursor(user_key, type_id, full_export)
        sent = 0
        chunks = 0

        while True:
            if is_cancelled():
                return TypeOutcome.CANCELLED
            if not budget.has_remaining():
                logger.info(f"{name}: execution budget exhausted after {sent} records")
                return TypeOutcome.PAUSED

            try:
                result = self.provider.query(type_id, cursor, chunk_limit)
            except DataUnavailableError as e:
                logger.warning(f"{name}: data unavailable ({e})")
                return TypeOutcome.UNAVAILABLE
            except ProviderError as e:
                logger.error(f"{name}: query failed, skipping type: {e}")
                return self._complete(user_key, type_id)

            if result.exhausted:
                if result.cursor is not None and result.cursor != cursor:
                    self.storage.save_cursor(user_key, type_id, result.cursor)
                logger.info(f"{name}: complete ({sent} records in {chunks} chunks)")
                return self._complete(user_key, type_id)

            records = result.records
            chunks += 1
            chunk = Chunk(
                type_tag=type_id,
                user_key=user_key,
                payload=build_payload(type_id, records),
                record_count=len(records),
                cursors={type_id: result.cursor} if result.cursor is not None else {},
            )

            outcome = self.transmitter.send(chunk)
            if outcome == SendResult.DELIVERED:
                sent += len(records)
                self.state_store.update_type_progress(
                    user_key, type_id, sent=len(records), pending_cursor=result.cursor
                )
                logger.info(f"{name}: chunk {chunks} sent ({len(records)} records, {sent} total)")
            elif outcome == SendResult.REJECTED:
                logger.warning(f"{name}: chunk {chunks} rejected, continuing")
                self.state_store.update_type_progress(
                    user_key, type_id, pending_cursor=result.cursor
                )
                if len(records) < chunk_limit and result.cursor is not None:
                    # No later chunk will carry the cursor past the rejected records.
                    self.storage.save_cursor(user_key, type_id, result.cursor)
            elif outcome == SendResult.FAILED:
                return TypeOutcome.PAUSED
            elif outcome == SendResult.AUTH_FAILED:
                return TypeOutcome.AUTH_FAILED
            else:
                return TypeOutcome.CANCELLED

            if len(records) < chunk_limit:
                logger.info(f"{name}: complete ({sent} records in {chunks} chunks)")
                return self._complete(user_key, type_id)

            if result.cursor is None or result.cursor == cursor:
                # Re-querying would return the same batch forever.
                logger.error(f"{name}: provider did not advance its cursor, skipping rest of type")
                return self._complete(user_key, type_id)
            cursor = result.cursor
