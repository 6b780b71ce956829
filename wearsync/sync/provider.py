"""Data provider boundary: query contract, error taxonomy and adapter.

The provider (a wearable SDK, a health store export, a vendor API) owns
authorization and record enumeration. The engine only sees batches of
already-mapped records plus an opaque cursor per type.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from .types import short_type_name

__all__ = [
    "QueryResult",
    "DataProviderProtocol",
    "ProviderAdapter",
    "ProviderError",
    "DataUnavailableError",
    "is_data_unavailable_error",
]

logger = logging.getLogger(__name__)

_UNAVAILABLE_MARKERS = ("protected health data", "inaccessible", "device is locked")


class ProviderError(Exception):
    """Provider failed to read a type; the rest of the type is skipped."""

    def __init__(self, message: str, type_id: Optional[str] = None):
        self.type_id = type_id
        super().__init__(message)


class DataUnavailableError(ProviderError):
    """Data is temporarily inaccessible (e.g. device locked); retry later."""

    pass


@dataclass
class QueryResult:
    """One bounded batch returned by the provider for a single type."""

    records: list[dict] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    cursor: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return not self.records


@runtime_checkable
class DataProviderProtocol(Protocol):
    """Interface for reading records from the data source."""

    def query(self, type_id: str, cursor: Optional[str], limit: int) -> QueryResult: ...


def is_data_unavailable_error(error: BaseException) -> bool:
    """Check whether an error means "locked / temporarily inaccessible"."""
    if isinstance(error, DataUnavailableError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _UNAVAILABLE_MARKERS)


class ProviderAdapter:
    """Wraps a provider so the puller only ever sees the engine's taxonomy.

    Foreign exceptions become ProviderError or DataUnavailableError,
    malformed batches become ProviderError and over-long ones are reported.
    """

    def __init__(self, provider: Optional[DataProviderProtocol]):
        self.provider = provider

    @property
    def available(self) -> bool:
        return self.provider is not None

    def query(self, type_id: str, cursor: Optional[str], limit: int) -> QueryResult:
        """Query one batch.

        Raises:
            DataUnavailableError: data is temporarily inaccessible
            ProviderError: any other provider failure
        """
        name = short_type_name(type_id)
        try:
            result = self.provider.query(type_id, cursor, limit)
        except ProviderError:
            raise
        except Exception as e:
            if is_data_unavailable_error(e):
                raise DataUnavailableError(str(e), type_id=type_id) from e
            raise ProviderError(f"{name}: {e}", type_id=type_id) from e

        if result is None:
            return QueryResult(cursor=cursor)
        result = _as_query_result(result, name, type_id)

        records = result.records
        if len(records) > limit:
            # The cursor covers the whole batch, so it cannot be cut back.
            logger.warning(
                f"{name}: provider returned {len(records)} records for limit {limit}"
            )

        if result.deleted_ids:
            logger.debug(f"{name}: {len(result.deleted_ids)} deleted records reported")

        return result


def _as_query_result(result, name: str, type_id: str) -> QueryResult:
    """Accept a QueryResult or a (records, deleted_ids, cursor) tuple."""
    if isinstance(result, QueryResult):
        records, deleted, cursor = result.records, result.deleted_ids, result.cursor
    elif isinstance(result, tuple) and len(result) == 3:
        records, deleted, cursor = result
    else:
        raise ProviderError(
            f"{name}: provider returned {type(result).__name__}, expected QueryResult",
            type_id=type_id,
        )

    if cursor is not None and not isinstance(cursor, str):
        raise ProviderError(f"{name}: cursor must be a string", type_id=type_id)
    try:
        records = list(records or [])
        deleted = list(deleted or [])
    except TypeError as e:
        raise ProviderError(f"{name}: malformed batch: {e}", type_id=type_id) from e
    if not all(isinstance(record, dict) for record in records):
        raise ProviderError(f"{name}: records must be dicts", type_id=type_id)
    return QueryResult(records=records, deleted_ids=deleted, cursor=cursor)
