"""Authenticated async HTTP transport."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from bridgesync.backoff import BackoffPolicy, retry_async
from bridgesync.errors import (
    BridgeSyncError,
    ConnectionFailedError,
    RequestTimeoutError,
    error_from_response,
)

log = logging.getLogger(__name__)

DEFAULT_RETRY = BackoffPolicy(base_delay=3.0, max_attempts=2)


def should_retry(exc: BaseException) -> bool:
    """Timeouts, dropped connections and 503/504. Never 429, 500 or 502."""
    return isinstance(exc, BridgeSyncError) and exc.transient


class HTTPClient:
    """Thin wrapper around ``httpx.AsyncClient``.

    Responses are read in full before they are returned, so a call either
    yields a decoded body or raises; there is no partially observed response.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: float = 30.0,
        retry: BackoffPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._retry = retry if retry is not None else DEFAULT_RETRY
        self._sleep = sleep
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=timeout, transport=transport)

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def token(self) -> str | None:
        return self._token

    @token.setter
    def token(self, value: str | None) -> None:
        self._token = value

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            response = await self._client.request(
                method, path, json=json, params=params or None, headers=self._headers()
            )
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"Request timed out: {exc}", endpoint=path, method=method) from exc
        except httpx.TransportError as exc:
            raise ConnectionFailedError(f"Connection failed: {exc}", endpoint=path, method=method) from exc

        if response.status_code >= 400:
            raise error_from_response(response)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise BridgeSyncError(
                "Response body is not valid JSON",
                status=response.status_code, endpoint=path, method=method,
            ) from exc

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        retry: bool = True,
    ) -> Any:
        async def attempt() -> Any:
            return await self._send(method, path, json=json, params=params)

        if not retry:
            return await attempt()
        return await retry_async(
            attempt, self._retry, should_retry=should_retry, sleep=self._sleep, describe=f"{method} {path}",
        )

    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any = None, *, params: dict[str, Any] | None = None) -> Any:
        return await self.request("POST", path, json=json, params=params)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HTTPClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
