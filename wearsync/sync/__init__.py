"""Sync module - streams provider records to the collection API."""

from .budget import DeadlineBudget, ExecutionBudget, UnlimitedBudget
from .http_client import SyncApiClient
from .monitor import ConnectivityMonitor
from .provider import DataProviderProtocol, ProviderAdapter, QueryResult
from .puller import TypeOutcome, TypePuller
from .retry import RetryConfig, retry_with_backoff
from .state import SyncState, SyncStateStore
from .storage import SyncStorage
from .sync_engine import SyncEngine, SyncOutcome
from .transmitter import Chunk, ChunkTransmitter, SendResult

__all__ = [
    "Chunk",
    "ChunkTransmitter",
    "ConnectivityMonitor",
    "DataProviderProtocol",
    "DeadlineBudget",
    "ExecutionBudget",
    "ProviderAdapter",
    "QueryResult",
    "RetryConfig",
    "SendResult",
    "SyncApiClient",
    "SyncEngine",
    "SyncOutcome",
    "SyncState",
    "SyncStateStore",
    "SyncStorage",
    "TypeOutcome",
    "TypePuller",
    "UnlimitedBudget",
    "retry_with_backoff",
]
