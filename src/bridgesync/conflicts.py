"""Conflict resolver: submit explicit per-conflict decisions."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

from bridgesync import events as ev
from bridgesync.api import SyncAPI
from bridgesync.errors import BridgeSyncError, classify_error
from bridgesync.events import EventBus
from bridgesync.models.sync import (
    Conflict,
    ConflictResolution,
    FailedResolution,
    Resolution,
    ResolutionResult,
)
from bridgesync.store import SyncStateStore

log = logging.getLogger(__name__)

_KEY_NAMESPACE = uuid.UUID("6f1c1f8e-52a4-4c36-9a51-0d8f0c3b2a17")


def resolution_key(resolution: ConflictResolution) -> str:
    """Stable idempotency key for one decision on one conflict."""
    parts = [resolution.conflict_id, resolution.resolution.value]
    if resolution.merged_payload is not None:
        parts.append(json.dumps(resolution.merged_payload, sort_keys=True, separators=(",", ":")))
    return uuid.uuid5(_KEY_NAMESPACE, "|".join(parts)).hex


def chosen_payload(conflict: Conflict, resolution: ConflictResolution) -> dict[str, Any] | None:
    if resolution.resolution is Resolution.KEEP_LOCAL:
        return dict(conflict.local)
    if resolution.resolution is Resolution.KEEP_REMOTE:
        return dict(conflict.remote) if conflict.remote is not None else None
    return dict(resolution.merged_payload or {})


class ConflictResolver:
    def __init__(
        self,
        api: SyncAPI,
        store: SyncStateStore,
        events: EventBus | None = None,
        *,
        max_concurrency: int = 4,
    ) -> None:
        self._api = api
        self._store = store
        self._events = events or EventBus()
        self._max_concurrency = max(1, max_concurrency)

    async def resolve(
        self, user_id: int, device_id: str, resolutions: list[ConflictResolution]
    ) -> ResolutionResult:
        """Submit each decision independently; one failure never blocks the rest."""
        semaphore = asyncio.Semaphore(self._max_concurrency)
        seen: set[str] = set()
        tasks = []
        duplicates: list[FailedResolution] = []
        for resolution in resolutions:
            if resolution.conflict_id in seen:
                duplicates.append(FailedResolution(
                    conflict_id=resolution.conflict_id,
                    error="Duplicate resolution in batch",
                    code="DUPLICATE",
                ))
                continue
            seen.add(resolution.conflict_id)
            tasks.append(self._resolve_one(user_id, device_id, resolution, semaphore))

        outcomes = await asyncio.gather(*tasks)
        resolved = [o for o in outcomes if isinstance(o, str)]
        failed = [o for o in outcomes if isinstance(o, FailedResolution)] + duplicates

        if resolved:
            await self._events.emit(
                ev.CONFLICT_RESOLVED,
                user_id=user_id,
                device_id=device_id,
                resolved=resolved,
                failed=[f.conflict_id for f in failed],
            )
        log.info("Resolved %d conflicts, %d failed", len(resolved), len(failed))
        return ResolutionResult(resolved=resolved, failed=failed)

    async def _resolve_one(
        self,
        user_id: int,
        device_id: str,
        resolution: ConflictResolution,
        semaphore: asyncio.Semaphore,
    ) -> str | FailedResolution:
        conflict_id = resolution.conflict_id
        conflict = await self._store.get_conflict(user_id, device_id, conflict_id)
        if conflict is None:
            return FailedResolution(conflict_id=conflict_id, error="Unknown conflict", code="UNKNOWN_CONFLICT")

        entry = {
            "conflict_id": conflict_id,
            "resolution": resolution.resolution.value,
            "data": chosen_payload(conflict, resolution),
            "idempotency_key": resolution_key(resolution),
            "entity_type": conflict.entity_type,
            "entity_id": conflict.entity_id,
        }
        async with semaphore:
            try:
                result = await self._api.resolve_conflicts(device_id, [entry])
            except BridgeSyncError as exc:
                log.warning("Resolution of conflict %s failed: %s", conflict_id, exc)
                return FailedResolution(
                    conflict_id=conflict_id,
                    error=exc.message,
                    code=exc.code or classify_error(exc).value,
                )

        if conflict_id in result.resolved:
            await self._store.resolve_conflict(user_id, device_id, conflict_id)
            return conflict_id
        for failure in result.failed:
            if failure.conflict_id == conflict_id:
                return failure
        return FailedResolution(conflict_id=conflict_id, error="Resolution not confirmed by server")
