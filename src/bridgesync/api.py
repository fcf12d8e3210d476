"""Typed wrappers around the backend's sync and record endpoints."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from bridgesync.errors import BridgeSyncError, extract_error_message
from bridgesync.fallback import FieldErrorMatcher, InvalidFieldCache, query_with_fallback
from bridgesync.http import HTTPClient
from bridgesync.models.base import utcnow
from bridgesync.models.sync import (
    AckResult,
    PendingChange,
    PullResult,
    PushResult,
    RemoteSyncState,
    ResolutionResult,
    SmartPullResult,
    SyncHealth,
    UpdatesInfo,
)

log = logging.getLogger(__name__)


class Endpoints:
    """Backend paths. Subclass to point at a differently laid out server."""

    PUSH = "/api/v1/offline-sync/push"
    PULL = "/api/v1/offline-sync/pull"
    RESOLVE_CONFLICTS = "/api/v1/offline-sync/resolve-conflicts"
    STATE = "/api/v1/offline-sync/state"
    RESET = "/api/v1/offline-sync/reset"
    HEALTH = "/api/v1/offline-sync/health"
    CHECK_UPDATES = "/api/v1/webhooks/check-updates"
    SMART_PULL = "/api/v2/sync/pull"
    ACK = "/api/v1/odoo-sync/ack"
    CALL_KW = "/api/v1/odoo/call_kw"


class SyncAPI:
    def __init__(self, http: HTTPClient, endpoints: Endpoints | None = None) -> None:
        self._http = http
        self.endpoints = endpoints or Endpoints()

    async def push(
        self,
        device_id: str,
        changes: Mapping[str, Iterable[PendingChange]],
        timestamp: datetime | None = None,
    ) -> PushResult:
        body = {
            "device_id": device_id,
            "changes": {etype: [c.to_wire() for c in items] for etype, items in changes.items()},
            "timestamp": (timestamp or utcnow()).isoformat(),
        }
        return PushResult.model_validate(await self._http.post(self.endpoints.PUSH, body))

    async def pull(
        self,
        device_id: str,
        *,
        models: list[str] | None = None,
        since: datetime | None = None,
        batch_size: int | None = None,
    ) -> PullResult:
        body: dict[str, Any] = {"device_id": device_id}
        if models is not None:
            body["models"] = models
        if since is not None:
            body["since"] = since.isoformat()
        if batch_size is not None:
            body["batch_size"] = batch_size
        return PullResult.model_validate(await self._http.post(self.endpoints.PULL, body))

    async def resolve_conflicts(self, device_id: str, resolutions: list[dict[str, Any]]) -> ResolutionResult:
        body = {"device_id": device_id, "resolutions": resolutions}
        return ResolutionResult.model_validate(await self._http.post(self.endpoints.RESOLVE_CONFLICTS, body))

    async def get_state(self, device_id: str) -> RemoteSyncState:
        data = await self._http.get(self.endpoints.STATE, params={"device_id": device_id})
        return RemoteSyncState.model_validate(data)

    async def reset(self, device_id: str) -> bool:
        data = await self._http.post(self.endpoints.RESET, {"device_id": device_id})
        return bool(data.get("success", False)) if isinstance(data, dict) else False

    async def health(self) -> SyncHealth:
        return SyncHealth.model_validate(await self._http.get(self.endpoints.HEALTH))

    async def check_updates(self, user_id: int, device_id: str, app_type: str | None = None) -> UpdatesInfo:
        params = {"user_id": user_id, "device_id": device_id, "app_type": app_type}
        return UpdatesInfo.model_validate(await self._http.get(self.endpoints.CHECK_UPDATES, params=params))

    async def smart_pull(
        self,
        user_id: int,
        device_id: str,
        *,
        last_event_id: int | None = None,
        app_type: str | None = None,
        models: list[str] | None = None,
        limit: int | None = None,
    ) -> SmartPullResult:
        body: dict[str, Any] = {"user_id": user_id, "device_id": device_id}
        if last_event_id is not None:
            body["last_event_id"] = last_event_id
        if app_type is not None:
            body["app_type"] = app_type
        if models is not None:
            body["models"] = models
        if limit is not None:
            body["limit"] = limit
        return SmartPullResult.model_validate(await self._http.post(self.endpoints.SMART_PULL, body))

    async def acknowledge(self, event_ids: list[int]) -> AckResult:
        if not event_ids:
            return AckResult(success=True, processed_count=0, message="No events to acknowledge")
        data = await self._http.post(self.endpoints.ACK, {"event_ids": event_ids})
        return AckResult.model_validate(data)


class RecordsAPI:
    """Generic record query and schema introspection through ``call_kw``."""

    def __init__(self, http: HTTPClient, endpoints: Endpoints | None = None) -> None:
        self._http = http
        self.endpoints = endpoints or Endpoints()

    async def call_kw(
        self,
        model: str,
        method: str,
        args: list[Any] | None = None,
        kwargs: dict[str, Any] | None = None,
    ) -> Any:
        body = {"model": model, "method": method, "args": args or [], "kwargs": kwargs or {}}
        data = await self._http.post(self.endpoints.CALL_KW, body)
        if isinstance(data, dict):
            if data.get("error"):
                # Some gateways report RPC errors with a 200 status.
                code, message = extract_error_message(data)
                raise BridgeSyncError(
                    message or "RPC call failed",
                    code=str(code) if code is not None else None,
                    endpoint=self.endpoints.CALL_KW,
                    method="POST",
                    details=data,
                )
            if "result" in data:
                return data["result"]
        return data

    async def search_read(
        self,
        model: str,
        *,
        domain: list[Any] | None = None,
        fields: list[str] | None = None,
        limit: int = 80,
        offset: int = 0,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {"domain": domain or [], "limit": limit, "offset": offset}
        if fields is not None:
            kwargs["fields"] = fields
        if order is not None:
            kwargs["order"] = order
        result = await self.call_kw(model, "search_read", kwargs=kwargs)
        if isinstance(result, dict):
            result = result.get("records", [])
        return list(result or [])

    async def fields_get(self, model: str, attributes: list[str] | None = None) -> dict[str, dict[str, Any]]:
        kwargs = {"attributes": attributes} if attributes else {}
        result = await self.call_kw(model, "fields_get", kwargs=kwargs)
        return dict(result or {})

    async def field_names(self, model: str) -> list[str]:
        return list(await self.fields_get(model))

    async def search_read_adaptive(
        self,
        model: str,
        fields: list[str],
        *,
        cache: InvalidFieldCache | None = None,
        matcher: FieldErrorMatcher | None = None,
        **kwargs: Any,
    ) -> list[dict[str, Any]]:
        """``search_read`` that degrades ``fields`` when the backend rejects some of them."""

        async def query(current: list[str]) -> list[dict[str, Any]]:
            return await self.search_read(model, fields=current, **kwargs)

        return await query_with_fallback(
            model, fields, query, cache=cache, matcher=matcher, fetch_schema=lambda: self.field_names(model),
        )
