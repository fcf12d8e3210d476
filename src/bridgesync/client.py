"""High-level client wiring transport, store, engines and orchestrator."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any, Literal

import httpx

from bridgesync import events as ev
from bridgesync.api import Endpoints, RecordsAPI, SyncAPI
from bridgesync.config import config
from bridgesync.conflicts import ConflictResolver
from bridgesync.events import EventBus
from bridgesync.fallback import FieldErrorMatcher, InvalidFieldCache, RegexFieldErrorMatcher, default_cache
from bridgesync.http import HTTPClient
from bridgesync.models.base import Payload
from bridgesync.models.sync import (
    Conflict,
    ConflictResolution,
    Operation,
    PendingChange,
    PullResult,
    PushResult,
    RemoteSyncState,
    ResolutionResult,
    SmartPullResult,
    SyncCursor,
    SyncHealth,
    SyncReport,
    UpdatesInfo,
)
from bridgesync.orchestrator import ApplyCallback, DecideCallback, SingleFlight, SyncOrchestrator
from bridgesync.presets import FieldPreset, get_fields
from bridgesync.pull import ProgressCallback, PullEngine
from bridgesync.push import PushEngine
from bridgesync.store import SyncStateStore
from bridgesync.stream import ReconnectingStream

log = logging.getLogger(__name__)


class BridgeSyncClient:
    """One user/device view of the backend.

    Usage::

        async with BridgeSyncClient("https://backend.example.com", token, user_id=7, device_id="tablet-1") as c:
            await c.stage("task", -1, "create", {"title": "A"})
            report = await c.sync()

    Unset arguments fall back to the ``config`` singleton.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        user_id: int | None = None,
        device_id: str | None = None,
        app_type: str | None = None,
        mode: Literal["batch", "smart"] | None = None,
        models: list[str] | None = None,
        store: SyncStateStore | None = None,
        events: EventBus | None = None,
        cache: InvalidFieldCache | None = None,
        matcher: FieldErrorMatcher | None = None,
        flights: SingleFlight | None = None,
        endpoints: Endpoints | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        apply: ApplyCallback | None = None,
        decide: DecideCallback | None = None,
        on_progress: ProgressCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        sync_cfg = config.sync
        user_id = user_id if user_id is not None else sync_cfg.user_id
        if user_id is None:
            raise ValueError("user_id is required (argument or BRIDGESYNC_SYNC_USER_ID)")
        self.user_id = user_id
        self.device_id = device_id or sync_cfg.device_id

        self.http = HTTPClient(
            base_url or config.transport.base_url,
            token,
            timeout=config.transport.timeout,
            retry=config.transport.retry_policy(),
            transport=transport,
            sleep=sleep,
        )
        self.api = SyncAPI(self.http, endpoints)
        self.records = RecordsAPI(self.http, endpoints)
        self.events = events or EventBus()
        self.store = store or SyncStateStore()
        self.cache = cache if cache is not None else default_cache
        self.matcher = matcher or RegexFieldErrorMatcher(config.fallback.invalid_field_pattern)

        self.push_engine = PushEngine(self.api, self.store, self.events)
        self.pull_engine = PullEngine(
            self.api, self.store, self.records, self.events,
            app_type=app_type or sync_cfg.app_type, cache=self.cache, matcher=self.matcher,
        )
        self.resolver = ConflictResolver(
            self.api, self.store, self.events, max_concurrency=config.fallback.max_concurrent_resolutions,
        )
        self.orchestrator = SyncOrchestrator(
            self.push_engine,
            self.pull_engine,
            self.resolver,
            self.store,
            self.events,
            user_id=self.user_id,
            device_id=self.device_id,
            mode=mode or sync_cfg.mode,
            models=models if models is not None else sync_cfg.model_list,
            batch_size=sync_cfg.batch_size,
            smart_pull_limit=sync_cfg.smart_pull_limit,
            apply=apply,
            decide=decide,
            on_progress=on_progress,
            flights=flights,
            backoff=config.backoff.policy(),
            check_interval=sync_cfg.check_interval,
            sleep=sleep,
        )

    @property
    def token(self) -> str | None:
        return self.http.token

    @token.setter
    def token(self, value: str | None) -> None:
        self.http.token = value

    # --- Local state ---

    async def stage(
        self,
        entity_type: str,
        entity_id: int,
        operation: Operation | str,
        values: Payload | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> PendingChange:
        change = PendingChange(
            entity_type=entity_type,
            entity_id=entity_id,
            operation=Operation(operation),
            values=values or {},
            **({"idempotency_key": idempotency_key} if idempotency_key else {}),
        )
        return await self.store.stage(self.user_id, self.device_id, change)

    async def pending(self) -> list[PendingChange]:
        return await self.store.pending(self.user_id, self.device_id)

    async def conflicts(self) -> list[Conflict]:
        return await self.store.conflicts(self.user_id, self.device_id)

    async def cursor(self) -> SyncCursor:
        return await self.store.get_cursor(self.user_id, self.device_id)

    # --- Sync operations ---

    async def sync(self) -> SyncReport:
        return await self.orchestrator.sync()

    def cancel(self) -> None:
        self.orchestrator.cancel()

    async def push(self, changes: Mapping[str, list[PendingChange]] | None = None) -> PushResult:
        return await self.push_engine.push(self.user_id, self.device_id, changes)

    async def pull(
        self,
        *,
        models: list[str] | None = None,
        since: datetime | None = None,
        batch_size: int | None = None,
    ) -> PullResult:
        return await self.pull_engine.pull(self.device_id, models=models, since=since, batch_size=batch_size)

    async def smart_pull(self, *, limit: int | None = None, models: list[str] | None = None) -> SmartPullResult:
        return await self.pull_engine.smart_pull(self.user_id, self.device_id, limit=limit, models=models)

    async def drain(
        self,
        apply: Callable[[SmartPullResult], Awaitable[None]],
        *,
        limit: int | None = None,
        models: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SmartPullResult:
        return await self.pull_engine.drain(
            self.user_id,
            self.device_id,
            apply,
            limit=limit if limit is not None else self.orchestrator.smart_pull_limit,
            models=models,
            on_progress=on_progress,
        )

    async def check_updates(self) -> UpdatesInfo:
        return await self.pull_engine.check_updates(self.user_id, self.device_id)

    async def acknowledge(self, result: PullResult | SmartPullResult) -> SyncCursor:
        return await self.pull_engine.acknowledge(self.user_id, self.device_id, result)

    async def hydrate(
        self,
        result: SmartPullResult,
        fields: Mapping[str, list[str]] | None = None,
        preset: FieldPreset = FieldPreset.BASIC,
    ) -> dict[str, list[dict[str, Any]]]:
        return await self.pull_engine.hydrate(result, fields, preset)

    async def resolve(self, resolutions: list[ConflictResolution]) -> ResolutionResult:
        return await self.resolver.resolve(self.user_id, self.device_id, resolutions)

    async def reset(self, *, remote: bool = True) -> SyncCursor:
        """Zero the local cursor and conflict history, and optionally the server's state."""
        if remote:
            await self.api.reset(self.device_id)
        cursor = await self.store.reset(self.user_id, self.device_id)
        await self.events.emit(ev.SYNC_STATE_RESET, user_id=self.user_id, device_id=self.device_id, remote=remote)
        return cursor

    async def remote_state(self) -> RemoteSyncState:
        return await self.api.get_state(self.device_id)

    async def health(self) -> SyncHealth:
        return await self.api.health()

    # --- Records ---

    async def search_read(
        self,
        model: str,
        fields: list[str] | None = None,
        *,
        preset: FieldPreset | str | None = None,
        fallback: bool = True,
        **kwargs: Any,
    ) -> list[dict[str, Any]]:
        """Query records; field lists are degraded on rejection unless ``fallback`` is off."""
        if fields is None and preset is not None:
            fields = get_fields(model, preset)
        if not fallback or fields is None:
            return await self.records.search_read(model, fields=fields, **kwargs)
        return await self.records.search_read_adaptive(
            model, fields, cache=self.cache, matcher=self.matcher, **kwargs,
        )

    async def fields_get(self, model: str) -> dict[str, dict[str, Any]]:
        return await self.records.fields_get(model)

    def clear_field_cache(self, model: str | None = None) -> None:
        self.cache.clear(model)

    # --- Background ---

    def start_periodic(self, interval: float | None = None) -> asyncio.Task[None]:
        return self.orchestrator.start_periodic(interval)

    async def stop_periodic(self) -> None:
        await self.orchestrator.stop_periodic()

    def stream(self, path: str, **kwargs: Any) -> ReconnectingStream:
        return ReconnectingStream(
            f"{self.http.base_url}{path}",
            self.http.token,
            policy=config.backoff.policy(),
            events=self.events,
            **kwargs,
        )

    async def close(self) -> None:
        await self.orchestrator.stop_periodic()
        await self.http.close()

    async def __aenter__(self) -> BridgeSyncClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
