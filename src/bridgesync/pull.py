"""Pull engine: batch pulls, event pulls and explicit acknowledgement."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any

from bridgesync import events as ev
from bridgesync.api import RecordsAPI, SyncAPI
from bridgesync.errors import BridgeSyncError
from bridgesync.events import EventBus
from bridgesync.fallback import FieldErrorMatcher, InvalidFieldCache
from bridgesync.models.sync import ChangeEvent, PullResult, SmartPullResult, SyncCursor, UpdatesInfo
from bridgesync.presets import FieldPreset, get_fields
from bridgesync.store import SyncStateStore

log = logging.getLogger(__name__)

DELETE_EVENTS = frozenset({"delete", "unlink", "deleted"})

# (events applied so far, pages applied so far)
ProgressCallback = Callable[[int, int], Awaitable[None]]


class PullEngine:
    """Fetches server state. Cursor writes happen only in ``acknowledge``
    (and the ``last_sync_at`` touch of ``smart_pull``)."""

    def __init__(
        self,
        api: SyncAPI,
        store: SyncStateStore,
        records: RecordsAPI | None = None,
        events: EventBus | None = None,
        *,
        app_type: str | None = None,
        cache: InvalidFieldCache | None = None,
        matcher: FieldErrorMatcher | None = None,
    ) -> None:
        self._api = api
        self._store = store
        self._records = records
        self._events = events or EventBus()
        self.app_type = app_type
        self._cache = cache
        self._matcher = matcher

    # --- Batch ---

    async def pull(
        self,
        device_id: str,
        *,
        models: list[str] | None = None,
        since: datetime | None = None,
        batch_size: int | None = None,
    ) -> PullResult:
        result = await self._api.pull(device_id, models=models, since=since, batch_size=batch_size)
        log.info("Pulled %d records from %d models", result.total_records, len(result.data))
        return result

    # --- Events ---

    async def check_updates(self, user_id: int, device_id: str) -> UpdatesInfo:
        info = await self._api.check_updates(user_id, device_id, self.app_type)
        if info.has_updates:
            log.info("Updates available: %d pending events", info.pending_events)
            await self._events.emit(
                ev.UPDATES_AVAILABLE,
                user_id=user_id,
                device_id=device_id,
                pending_count=info.pending_events,
                last_event_id=info.last_event_id,
            )
        return info

    async def smart_pull(
        self,
        user_id: int,
        device_id: str,
        *,
        limit: int | None = None,
        models: list[str] | None = None,
    ) -> SmartPullResult:
        cursor = await self._store.get_cursor(user_id, device_id)
        result = await self._api.smart_pull(
            user_id,
            device_id,
            last_event_id=cursor.last_event_id,
            app_type=self.app_type,
            models=models,
            limit=limit,
        )

        if cursor.last_event_id is not None:
            fresh = [e for e in result.events if e.id > cursor.last_event_id]
            if len(fresh) != len(result.events):
                log.debug("Discarding %d events at or below cursor %d", len(result.events) - len(fresh), cursor.last_event_id)
                result = result.model_copy(
                    update={"events": fresh, "new_events_count": len(fresh), "has_updates": bool(fresh)}
                )

        await self._store.touch(user_id, device_id)
        log.info("Smart pull: %d new events (cursor %s)", result.new_events_count, cursor.last_event_id)
        return result

    async def drain(
        self,
        user_id: int,
        device_id: str,
        apply: Callable[[SmartPullResult], Awaitable[None]],
        *,
        limit: int | None = None,
        models: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> SmartPullResult:
        """Pull, apply and acknowledge pages until the server reports no more.

        Each page is acknowledged before the next one is requested, so an
        interrupted drain resumes after the last applied page. Returns the
        applied events merged into one result; ``has_more`` stays set when
        ``should_stop`` ended the loop early.
        """
        applied: list[ChangeEvent] = []
        pages = 0
        while True:
            page = await self.smart_pull(user_id, device_id, limit=limit, models=models)
            if not page.events:
                break
            await apply(page)
            await self.acknowledge(user_id, device_id, page)
            applied.extend(page.events)
            pages += 1
            if on_progress is not None:
                await on_progress(len(applied), pages)
            if not page.has_more:
                break
            if should_stop is not None and should_stop():
                log.info("Drain stopped after %d pages", pages)
                break

        log.info("Drained %d events in %d pages", len(applied), pages)
        return page.model_copy(
            update={"events": applied, "new_events_count": len(applied), "has_updates": bool(applied)}
        )

    # --- Acknowledgement ---

    async def acknowledge(self, user_id: int, device_id: str, result: PullResult | SmartPullResult) -> SyncCursor:
        """Record that ``result`` was durably applied by the caller."""
        if isinstance(result, PullResult):
            return await self._store.advance_cursor(user_id, device_id, synced_at=result.synced_at)

        event_ids = [e.id for e in result.events]
        if not event_ids:
            return await self._store.touch(user_id, device_id)

        ack = await self._api.acknowledge(event_ids)
        if not ack.success:
            raise BridgeSyncError(
                ack.message or "Acknowledgement rejected",
                endpoint=self._api.endpoints.ACK,
                method="POST",
                details={"event_ids": event_ids},
            )
        cursor = await self._store.advance_cursor(user_id, device_id, last_event_id=max(event_ids))
        log.debug("Acknowledged %d events, cursor now %s", len(event_ids), cursor.last_event_id)
        return cursor

    # --- Hydration ---

    async def hydrate(
        self,
        result: SmartPullResult,
        fields: Mapping[str, list[str]] | None = None,
        preset: FieldPreset = FieldPreset.BASIC,
    ) -> dict[str, list[dict[str, Any]]]:
        """Read current records for the entities touched by ``result``.

        Field lists come from ``fields`` per entity type or from ``preset``;
        rejected fields are degraded through the fallback levels.
        """
        if self._records is None:
            raise RuntimeError("hydrate() needs a RecordsAPI")

        ids: dict[str, list[int]] = {}
        for event in result.events:
            if event.entity_type is None or event.record_id is None or event.event in DELETE_EVENTS:
                continue
            bucket = ids.setdefault(event.entity_type, [])
            if event.record_id not in bucket:
                bucket.append(event.record_id)

        hydrated: dict[str, list[dict[str, Any]]] = {}
        for entity_type, record_ids in ids.items():
            wanted = (fields or {}).get(entity_type) or get_fields(entity_type, preset)
            domain = [["id", "in", record_ids]]
            if wanted is None:
                records = await self._records.search_read(entity_type, domain=domain, limit=len(record_ids))
            else:
                records = await self._records.search_read_adaptive(
                    entity_type, wanted, cache=self._cache, matcher=self._matcher,
                    domain=domain, limit=len(record_ids),
                )
            hydrated[entity_type] = records
        return hydrated
