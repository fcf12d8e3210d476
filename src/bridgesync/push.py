"""Push engine: deliver the outbox and partition the server's verdict."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

from bridgesync import events as ev
from bridgesync.api import SyncAPI
from bridgesync.events import EventBus
from bridgesync.models.sync import PendingChange, PushResult
from bridgesync.store import SyncStateStore

log = logging.getLogger(__name__)


class PushEngine:
    def __init__(self, api: SyncAPI, store: SyncStateStore, events: EventBus | None = None) -> None:
        self._api = api
        self._store = store
        self._events = events or EventBus()

    async def push(
        self,
        user_id: int,
        device_id: str,
        changes: Mapping[str, list[PendingChange]] | None = None,
    ) -> PushResult:
        """Submit ``changes`` (default: the whole outbox) in one request.

        Explicit changes are staged first, so a push is always a push of
        outbox rows. Accepted and rejected keys leave the outbox; conflicted changes stay
        until resolved. Any request error propagates with the outbox untouched.
        """
        explicit = changes is not None
        if changes is None:
            changes = await self._store.pending_grouped(user_id, device_id)
        batch = {etype: list(items) for etype, items in changes.items() if items}
        if not batch:
            log.debug("Nothing to push for user %s device %s", user_id, device_id)
            return PushResult()
        if explicit:
            # Conflicts can only be recorded against outbox rows.
            for items in batch.values():
                for change in items:
                    await self._store.stage(user_id, device_id, change)

        sent = {c.idempotency_key for items in batch.values() for c in items}
        log.info("Pushing %d changes across %d entity types", len(sent), len(batch))

        result = _restrict(await self._api.push(device_id, batch), sent)

        # The response has been observed; the commit must finish even if we are cancelled.
        recorded = await asyncio.shield(self._store.apply_push_outcome(user_id, device_id, result))
        recorded_ids = {c.conflict_id for c in recorded}
        unmatched = [c for c in result.conflicts if c.conflict_id not in recorded_ids]
        if unmatched:
            log.warning(
                "%d conflicts matched no pending change and were not stored: %s",
                len(unmatched), [c.conflict_id for c in unmatched],
            )
        result = result.model_copy(update={"conflicts": [*recorded, *unmatched]})

        for failed in result.failed:
            log.warning(
                "Change %s rejected for %s/%s: %s",
                failed.idempotency_key, failed.entity_type, failed.entity_id, failed.error,
            )
        if result.conflicts:
            await self._events.emit(
                ev.CONFLICT_DETECTED,
                user_id=user_id,
                device_id=device_id,
                count=len(result.conflicts),
                conflict_ids=[c.conflict_id for c in result.conflicts],
            )
        await self._events.emit(
            ev.SYNC_PUSH_COMPLETED,
            user_id=user_id,
            device_id=device_id,
            successful=len(result.successful),
            failed=len(result.failed),
            conflicts=len(result.conflicts),
        )
        return result


def _restrict(result: PushResult, sent: set[str]) -> PushResult:
    """Drop outcomes for keys that were not part of this batch."""
    successful = [k for k in result.successful if k in sent]
    failed = [f for f in result.failed if f.idempotency_key in sent]
    dropped = len(result.successful) - len(successful) + len(result.failed) - len(failed)
    if dropped:
        log.warning("Ignoring %d push outcomes for keys outside the batch", dropped)
    return result.model_copy(update={"successful": successful, "failed": failed})
