"""Lifecycle notifications emitted by the sync layer."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Coroutine
from datetime import datetime
from typing import Any

from pydantic import Field

from bridgesync.models.base import SyncModel, utcnow

log = logging.getLogger(__name__)

# --- Event types ---

SYNC_STARTED = "sync.started"
SYNC_COMPLETED = "sync.completed"
SYNC_FAILED = "sync.failed"
SYNC_PUSH_COMPLETED = "sync.push.completed"
SYNC_STATE_RESET = "sync.state.reset"
CONFLICT_DETECTED = "sync.conflict.detected"
CONFLICT_RESOLVED = "sync.conflict.resolved"
UPDATES_AVAILABLE = "updates.available"
STREAM_CONNECTED = "stream.connected"
STREAM_RECONNECTING = "stream.reconnecting"
STREAM_DISCONNECTED = "stream.disconnected"

WILDCARD = "*"


class SyncEvent(SyncModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


EventHandler = Callable[[SyncEvent], Coroutine[Any, Any, None]]


class EventBus:
    """Async handler registry.

    Usage::

        bus = EventBus()

        @bus.on("sync.completed")
        async def on_done(event):
            print(event.data["cycle_id"])
    """

    def __init__(self, history_size: int = 100) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._history: deque[SyncEvent] = deque(maxlen=history_size)

    def on(self, event_type: str) -> Callable[[EventHandler], EventHandler]:
        """Decorator to register an event handler."""
        def decorator(func: EventHandler) -> EventHandler:
            self._handlers.setdefault(event_type, []).append(func)
            return func
        return decorator

    def add_handler(self, event_type: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def remove_handler(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    @property
    def history(self) -> list[SyncEvent]:
        return list(self._history)

    async def emit(self, event_type: str, **data: Any) -> SyncEvent:
        event = SyncEvent(type=event_type, data=data)
        self._history.append(event)
        log.debug("Event %s %s", event_type, data)
        await self._dispatch(event)
        return event

    async def _dispatch(self, event: SyncEvent) -> None:
        handlers = self._handlers.get(event.type, [])
        wildcard = self._handlers.get(WILDCARD, [])
        for handler in [*handlers, *wildcard]:
            try:
                await handler(event)
            except Exception:
                log.exception("Error in event handler for %s", event.type)
