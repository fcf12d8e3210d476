"""Wire and state models."""

from bridgesync.models.base import Payload, SyncModel
from bridgesync.models.errors import ErrorInfo
from bridgesync.models.query import FieldFallbackStatus
from bridgesync.models.sync import (
    AckResult,
    ChangeEvent,
    Conflict,
    ConflictKind,
    ConflictResolution,
    CycleStatus,
    FailedChange,
    FailedResolution,
    Operation,
    PendingChange,
    PullResult,
    PushResult,
    RemoteSyncState,
    Resolution,
    ResolutionResult,
    SmartPullResult,
    SyncCursor,
    SyncHealth,
    SyncReport,
    UpdatesInfo,
)

__all__ = [
    "AckResult",
    "ChangeEvent",
    "Conflict",
    "ConflictKind",
    "ConflictResolution",
    "CycleStatus",
    "ErrorInfo",
    "FailedChange",
    "FailedResolution",
    "FieldFallbackStatus",
    "Operation",
    "Payload",
    "PendingChange",
    "PullResult",
    "PushResult",
    "RemoteSyncState",
    "Resolution",
    "ResolutionResult",
    "SmartPullResult",
    "SyncCursor",
    "SyncHealth",
    "SyncModel",
    "SyncReport",
    "UpdatesInfo",
]
