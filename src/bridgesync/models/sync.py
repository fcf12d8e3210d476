from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, ConfigDict, Field, field_validator, model_validator

from bridgesync.models.base import Payload, SyncModel, utcnow
from bridgesync.models.errors import ErrorInfo


class WireModel(SyncModel):
    # Backends send numeric ids where strings are expected and vice versa.
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)


# ---------------------------------------------------------------------------
# Local state
# ---------------------------------------------------------------------------


class Operation(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PendingChange(SyncModel):
    entity_type: str
    entity_id: int
    operation: Operation
    values: Payload = Field(default_factory=dict)
    idempotency_key: str = Field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_local_only(self) -> bool:
        """Negative ids mark records that do not exist on the server yet."""
        return self.entity_id < 0

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.entity_id,
            "operation": self.operation.value,
            "data": self.values,
            "idempotency_key": self.idempotency_key,
            "local_timestamp": self.created_at.isoformat(),
        }


class SyncCursor(SyncModel):
    user_id: int
    device_id: str
    last_event_id: int | None = None
    last_sync_at: datetime | None = None
    pending_changes: int = 0


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


class ConflictKind(str, enum.Enum):
    BOTH_MODIFIED = "both_modified"
    REMOTE_DELETED = "remote_deleted"
    LOCAL_DELETED = "local_deleted"
    VERSION_MISMATCH = "version_mismatch"


class Conflict(WireModel):
    conflict_id: str = Field(validation_alias=AliasChoices("conflict_id", "id"))
    idempotency_key: str | None = None
    entity_type: str | None = Field(None, validation_alias=AliasChoices("entity_type", "model"))
    entity_id: int | None = Field(None, validation_alias=AliasChoices("entity_id", "record_id", "res_id"))
    local: Payload = Field(default_factory=dict, validation_alias=AliasChoices("local", "local_data"))
    remote: Payload | None = Field(
        None, validation_alias=AliasChoices("remote", "remote_data", "server_data")
    )
    kind: ConflictKind = Field(
        ConflictKind.BOTH_MODIFIED, validation_alias=AliasChoices("kind", "conflict_type", "type")
    )
    detected_at: datetime = Field(default_factory=utcnow)

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower().replace("-", "_")
            if value not in {k.value for k in ConflictKind}:
                return ConflictKind.VERSION_MISMATCH
        return value


class FailedChange(WireModel):
    idempotency_key: str
    entity_type: str | None = Field(None, validation_alias=AliasChoices("entity_type", "model"))
    entity_id: int | None = Field(None, validation_alias=AliasChoices("entity_id", "id", "record_id"))
    error: str = Field("rejected", validation_alias=AliasChoices("error", "message", "reason"))
    code: str | None = None


class PushResult(WireModel):
    successful: list[str] = Field(default_factory=list)
    failed: list[FailedChange] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)

    @field_validator("failed", mode="before")
    @classmethod
    def _wrap_bare_keys(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [{"idempotency_key": v} if isinstance(v, (str, int)) else v for v in value]
        return value

    @property
    def settled_keys(self) -> list[str]:
        """Keys that reached a terminal outcome and leave the outbox."""
        return [*self.successful, *(f.idempotency_key for f in self.failed)]


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


class PullResult(WireModel):
    data: dict[str, list[Payload]] = Field(default_factory=dict)
    total_records: int = 0
    synced_at: datetime = Field(default_factory=utcnow)

    @property
    def models(self) -> list[str]:
        return list(self.data)


class ChangeEvent(WireModel):
    id: int = Field(validation_alias=AliasChoices("id", "event_id"))
    entity_type: str | None = Field(None, validation_alias=AliasChoices("entity_type", "model"))
    record_id: int | None = Field(None, validation_alias=AliasChoices("record_id", "res_id", "entity_id"))
    event: str = Field("update", validation_alias=AliasChoices("event", "event_type"))
    payload: Payload = Field(default_factory=dict, validation_alias=AliasChoices("payload", "data"))
    timestamp: datetime | None = Field(None, validation_alias=AliasChoices("timestamp", "created_at"))


class SmartPullResult(WireModel):
    has_updates: bool = False
    new_events_count: int = 0
    events: list[ChangeEvent] = Field(default_factory=list)
    has_more: bool = False
    next_sync_token: str | None = None
    last_sync_time: datetime | None = None

    @property
    def last_event_id(self) -> int | None:
        return max((e.id for e in self.events), default=None)


class UpdatesInfo(WireModel):
    has_updates: bool = False
    pending_events: int = 0
    last_event_id: int | None = None


class AckResult(WireModel):
    success: bool = True
    processed_count: int = 0
    message: str | None = None


class RemoteSyncState(WireModel):
    device_id: str = "unknown"
    last_sync_at: datetime | None = None
    pending_changes: int = 0
    metadata: Payload | None = None


class SyncHealth(WireModel):
    status: str = "unknown"
    healthy: bool | None = None
    service: str | None = None
    version: str | None = None
    features: list[str] = Field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        if self.healthy is not None:
            return self.healthy
        return self.status in ("healthy", "ok")


# ---------------------------------------------------------------------------
# Conflict resolution
# ---------------------------------------------------------------------------


class Resolution(str, enum.Enum):
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MERGED = "merged"


class ConflictResolution(SyncModel):
    conflict_id: str
    resolution: Resolution
    merged_payload: Payload | None = None

    @model_validator(mode="after")
    def _check_payload(self) -> ConflictResolution:
        if self.resolution is Resolution.MERGED and self.merged_payload is None:
            raise ValueError("merged resolution requires merged_payload")
        if self.resolution is not Resolution.MERGED and self.merged_payload is not None:
            raise ValueError("merged_payload is only valid with the merged resolution")
        return self


class FailedResolution(WireModel):
    conflict_id: str
    error: str = Field("failed", validation_alias=AliasChoices("error", "message", "reason"))
    code: str | None = None


class ResolutionResult(WireModel):
    resolved: list[str] = Field(default_factory=list)
    failed: list[FailedResolution] = Field(default_factory=list)

    @field_validator("failed", mode="before")
    @classmethod
    def _wrap_bare_ids(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [{"conflict_id": v} if isinstance(v, (str, int)) else v for v in value]
        return value


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class CycleStatus(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncReport(SyncModel):
    cycle_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    user_id: int
    device_id: str
    status: CycleStatus = CycleStatus.COMPLETED
    push: PushResult | None = None
    pull: PullResult | None = None
    smart_pull: SmartPullResult | None = None
    conflicts: list[Conflict] = Field(default_factory=list)
    resolution: ResolutionResult | None = None
    acknowledged: bool = False
    error: str | None = None
    error_kind: str | None = None
    error_detail: ErrorInfo | None = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def ok(self) -> bool:
        return self.status is CycleStatus.COMPLETED
