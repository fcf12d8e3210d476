"""Long-lived websocket stream that reconnects under the backoff policy."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

import websockets
import websockets.asyncio.client

from bridgesync import events as ev
from bridgesync.backoff import BackoffPolicy, BackoffState
from bridgesync.errors import ConnectionFailedError
from bridgesync.events import EventBus

log = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]


class ReconnectingStream:
    """Receives JSON messages and dispatches them by their ``type`` key.

    Usage::

        stream = ReconnectingStream("wss://backend.example.com/ws/updates", token)

        @stream.on("record_updated")
        async def on_update(msg):
            ...

        await stream.run()  # returns after close(), raises once backoff is exhausted
    """

    def __init__(
        self,
        url: str,
        token: str | None = None,
        *,
        policy: BackoffPolicy | None = None,
        events: EventBus | None = None,
        connect: Callable[..., Any] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._url = url.replace("https://", "wss://").replace("http://", "ws://")
        self._token = token
        self._connect = connect or websockets.asyncio.client.connect
        self._events = events or EventBus()
        self._sleep = sleep
        self.backoff = BackoffState(policy or BackoffPolicy())
        self._handlers: dict[str, list[MessageHandler]] = {}
        self._ws: Any = None
        self._closed = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on(self, msg_type: str) -> Callable[[MessageHandler], MessageHandler]:
        def decorator(func: MessageHandler) -> MessageHandler:
            self._handlers.setdefault(msg_type, []).append(func)
            return func
        return decorator

    def add_handler(self, msg_type: str, handler: MessageHandler) -> None:
        self._handlers.setdefault(msg_type, []).append(handler)

    def _connect_kwargs(self) -> dict[str, Any]:
        if self._token:
            return {"additional_headers": {"Authorization": f"Bearer {self._token}"}}
        return {}

    async def run(self) -> None:
        self._closed = False
        while not self._closed:
            try:
                async with self._connect(self._url, **self._connect_kwargs()) as ws:
                    self._ws = ws
                    self.backoff.reset()
                    log.info("Stream connected to %s", self._url)
                    await self._events.emit(ev.STREAM_CONNECTED, url=self._url)
                    await self._receive(ws)
            except (websockets.exceptions.WebSocketException, OSError) as exc:
                if self._closed:
                    break
                log.warning("Stream connection to %s lost: %s", self._url, exc)
            finally:
                self._ws = None

            if self._closed:
                break
            delay = self.backoff.next_delay()
            if delay is None:
                await self._events.emit(ev.STREAM_DISCONNECTED, url=self._url, reason="backoff exhausted")
                raise ConnectionFailedError(
                    f"Gave up reconnecting after {self.backoff.attempt} attempts", endpoint=self._url,
                )
            log.info("Reconnecting to %s in %.1fs (attempt %d)", self._url, delay, self.backoff.attempt)
            await self._events.emit(
                ev.STREAM_RECONNECTING, url=self._url, attempt=self.backoff.attempt, delay=delay,
            )
            await self._sleep(delay)

        await self._events.emit(ev.STREAM_DISCONNECTED, url=self._url, reason="closed")

    async def _receive(self, ws: Any) -> None:
        async for raw in ws:
            if self._closed:
                return
            if isinstance(raw, bytes):
                raw = raw.decode()
            try:
                msg = json.loads(raw)
            except ValueError:
                log.warning("Dropping non-JSON stream message: %.100s", raw)
                continue
            if isinstance(msg, dict):
                await self._dispatch(msg)

    async def _dispatch(self, msg: dict[str, Any]) -> None:
        msg_type = str(msg.get("type", ""))
        handlers = self._handlers.get(msg_type, [])
        wildcard = self._handlers.get("*", [])
        for handler in [*handlers, *wildcard]:
            try:
                await handler(msg)
            except Exception:
                log.exception("Error in stream handler for %s", msg_type)

    async def send(self, msg_type: str, data: dict[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {"type": msg_type}
        if data:
            payload["data"] = data
        if self._ws is not None:
            await self._ws.send(json.dumps(payload))

    async def close(self) -> None:
        self._closed = True
        ws = self._ws
        if ws is not None:
            await ws.close()
