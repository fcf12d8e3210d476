"""Offline-first sync client with adaptive field fallback."""

from bridgesync.backoff import BackoffPolicy, BackoffState
from bridgesync.client import BridgeSyncClient
from bridgesync.errors import BridgeSyncError, ErrorKind, FallbackExhaustedError, classify_error
from bridgesync.events import EventBus
from bridgesync.fallback import FieldFallbackStrategy, InvalidFieldCache, query_with_fallback
from bridgesync.orchestrator import SingleFlight, SyncOrchestrator, SyncState
from bridgesync.store import SyncStateStore

__all__ = [
    "BackoffPolicy",
    "BackoffState",
    "BridgeSyncClient",
    "BridgeSyncError",
    "ErrorKind",
    "EventBus",
    "FallbackExhaustedError",
    "FieldFallbackStrategy",
    "InvalidFieldCache",
    "SingleFlight",
    "SyncOrchestrator",
    "SyncState",
    "SyncStateStore",
    "classify_error",
    "query_with_fallback",
]
