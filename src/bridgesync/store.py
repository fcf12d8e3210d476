"""Durable sync state: cursor, outbox and conflict records per (user, device)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bridgesync.db.engine import get_session_factory
from bridgesync.db.models import ConflictRow, OutboxRow, SyncCursorRow
from bridgesync.models.base import as_utc, utcnow
from bridgesync.models.sync import Conflict, ConflictKind, Operation, PendingChange, PushResult, SyncCursor

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row <-> model helpers
# ---------------------------------------------------------------------------


def _change_from_row(row: OutboxRow) -> PendingChange:
    return PendingChange(
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        operation=Operation(row.operation),
        values=row.values or {},
        idempotency_key=row.idempotency_key,
        created_at=as_utc(row.created_at),
    )


def _conflict_from_row(row: ConflictRow) -> Conflict:
    return Conflict(
        conflict_id=row.conflict_id,
        idempotency_key=row.idempotency_key,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        local=row.local_payload or {},
        remote=row.remote_payload,
        kind=ConflictKind(row.kind),
        detected_at=as_utc(row.detected_at),
    )


def _match_change(conflict: Conflict, pending: list[OutboxRow]) -> OutboxRow | None:
    """Find the outbox row a server-reported conflict refers to."""
    if conflict.idempotency_key:
        for row in pending:
            if row.idempotency_key == conflict.idempotency_key:
                return row
        return None
    for row in pending:
        if row.entity_type == conflict.entity_type and row.entity_id == conflict.entity_id:
            return row
    return None


class SyncStateStore:
    """Every access goes through one ``asyncio.Lock``; each write is one transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    def _session(self) -> AsyncSession:
        factory = self._session_factory or get_session_factory()
        return factory()

    # --- Cursor ---

    async def _cursor_row(self, db: AsyncSession, user_id: int, device_id: str) -> SyncCursorRow:
        result = await db.execute(
            select(SyncCursorRow).where(SyncCursorRow.user_id == user_id, SyncCursorRow.device_id == device_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            now = utcnow()
            row = SyncCursorRow(user_id=user_id, device_id=device_id, created_at=now, updated_at=now)
            db.add(row)
            await db.flush()
        return row

    async def _pending_count(self, db: AsyncSession, user_id: int, device_id: str) -> int:
        result = await db.execute(
            select(func.count()).select_from(OutboxRow).where(
                OutboxRow.user_id == user_id, OutboxRow.device_id == device_id
            )
        )
        return result.scalar_one()

    async def _to_cursor(self, db: AsyncSession, row: SyncCursorRow) -> SyncCursor:
        return SyncCursor(
            user_id=row.user_id,
            device_id=row.device_id,
            last_event_id=row.last_event_id,
            last_sync_at=as_utc(row.last_sync_at),
            pending_changes=await self._pending_count(db, row.user_id, row.device_id),
        )

    async def get_cursor(self, user_id: int, device_id: str) -> SyncCursor:
        """Return the cursor, creating an empty one on first access."""
        async with self._lock:
            async with self._session() as db:
                row = await self._cursor_row(db, user_id, device_id)
                cursor = await self._to_cursor(db, row)
                await db.commit()
                return cursor

    async def advance_cursor(
        self,
        user_id: int,
        device_id: str,
        *,
        last_event_id: int | None = None,
        synced_at: datetime | None = None,
    ) -> SyncCursor:
        """Move the cursor forward. ``last_event_id`` never decreases."""
        async with self._lock:
            async with self._session() as db:
                row = await self._cursor_row(db, user_id, device_id)
                if last_event_id is not None:
                    if row.last_event_id is None or last_event_id > row.last_event_id:
                        row.last_event_id = last_event_id
                    elif last_event_id < row.last_event_id:
                        log.debug(
                            "Ignoring cursor regression for user %s device %s: %s < %s",
                            user_id, device_id, last_event_id, row.last_event_id,
                        )
                row.last_sync_at = synced_at or utcnow()
                row.updated_at = utcnow()
                cursor = await self._to_cursor(db, row)
                await db.commit()
                return cursor

    async def touch(self, user_id: int, device_id: str, at: datetime | None = None) -> SyncCursor:
        return await self.advance_cursor(user_id, device_id, synced_at=at)

    # --- Outbox ---

    async def stage(self, user_id: int, device_id: str, change: PendingChange) -> PendingChange:
        """Append a change to the outbox. A key that is already staged is a no-op."""
        async with self._lock:
            async with self._session() as db:
                result = await db.execute(
                    select(OutboxRow).where(OutboxRow.idempotency_key == change.idempotency_key)
                )
                existing = result.scalar_one_or_none()
                if existing is not None:
                    log.debug("Change %s already staged", change.idempotency_key)
                    return _change_from_row(existing)
                db.add(OutboxRow(
                    idempotency_key=change.idempotency_key,
                    user_id=user_id,
                    device_id=device_id,
                    entity_type=change.entity_type,
                    entity_id=change.entity_id,
                    operation=change.operation.value,
                    values=dict(change.values),
                    created_at=change.created_at,
                ))
                await db.commit()
                return change

    async def pending(
        self, user_id: int, device_id: str, entity_types: Iterable[str] | None = None
    ) -> list[PendingChange]:
        """Outbox contents in staging order."""
        async with self._lock, self._session() as db:
            stmt = (
                select(OutboxRow)
                .where(OutboxRow.user_id == user_id, OutboxRow.device_id == device_id)
                .order_by(OutboxRow.id)
            )
            if entity_types is not None:
                stmt = stmt.where(OutboxRow.entity_type.in_(list(entity_types)))
            result = await db.execute(stmt)
            return [_change_from_row(r) for r in result.scalars().all()]

    async def pending_grouped(self, user_id: int, device_id: str) -> dict[str, list[PendingChange]]:
        grouped: dict[str, list[PendingChange]] = {}
        for change in await self.pending(user_id, device_id):
            grouped.setdefault(change.entity_type, []).append(change)
        return grouped

    async def pending_count(self, user_id: int, device_id: str) -> int:
        async with self._lock, self._session() as db:
            return await self._pending_count(db, user_id, device_id)

    # --- Push outcome ---

    async def apply_push_outcome(self, user_id: int, device_id: str, result: PushResult) -> list[Conflict]:
        """Commit one push response atomically.

        Settled keys leave the outbox and conflicts are recorded against the
        change they refer to. Returns the conflicts that were recorded.
        """
        async with self._lock:
            async with self._session() as db:
                settled = result.settled_keys
                if settled:
                    await db.execute(delete(OutboxRow).where(OutboxRow.idempotency_key.in_(settled)))

                recorded = await self._record_conflicts(db, user_id, device_id, result.conflicts)

                row = await self._cursor_row(db, user_id, device_id)
                row.last_sync_at = utcnow()
                row.updated_at = row.last_sync_at
                await db.commit()
                return recorded

    async def _record_conflicts(
        self, db: AsyncSession, user_id: int, device_id: str, conflicts: list[Conflict]
    ) -> list[Conflict]:
        if not conflicts:
            return []
        rows = await db.execute(
            select(OutboxRow).where(OutboxRow.user_id == user_id, OutboxRow.device_id == device_id)
        )
        pending = list(rows.scalars().all())

        recorded: list[Conflict] = []
        for conflict in conflicts:
            target = _match_change(conflict, pending)
            if target is None:
                log.debug(
                    "Conflict %s not stored: no pending change for %s/%s (key %s)",
                    conflict.conflict_id, conflict.entity_type, conflict.entity_id, conflict.idempotency_key,
                )
                continue
            stored = conflict.model_copy(update={
                "idempotency_key": target.idempotency_key,
                "entity_type": target.entity_type,
                "entity_id": target.entity_id,
                "local": conflict.local or dict(target.values or {}),
            })
            existing = await db.get(ConflictRow, stored.conflict_id)
            if existing is None:
                db.add(ConflictRow(
                    conflict_id=stored.conflict_id,
                    user_id=user_id,
                    device_id=device_id,
                    idempotency_key=stored.idempotency_key,
                    entity_type=stored.entity_type,
                    entity_id=stored.entity_id,
                    kind=stored.kind.value,
                    local_payload=dict(stored.local),
                    remote_payload=dict(stored.remote) if stored.remote is not None else None,
                    detected_at=stored.detected_at,
                ))
            else:
                existing.kind = stored.kind.value
                existing.local_payload = dict(stored.local)
                existing.remote_payload = dict(stored.remote) if stored.remote is not None else None
            recorded.append(stored)
        return recorded

    # --- Conflicts ---

    async def add_conflicts(self, user_id: int, device_id: str, conflicts: list[Conflict]) -> list[Conflict]:
        async with self._lock:
            async with self._session() as db:
                recorded = await self._record_conflicts(db, user_id, device_id, conflicts)
                await db.commit()
                return recorded

    async def conflicts(self, user_id: int, device_id: str) -> list[Conflict]:
        async with self._lock, self._session() as db:
            result = await db.execute(
                select(ConflictRow)
                .where(ConflictRow.user_id == user_id, ConflictRow.device_id == device_id)
                .order_by(ConflictRow.detected_at)
            )
            return [_conflict_from_row(r) for r in result.scalars().all()]

    async def get_conflict(self, user_id: int, device_id: str, conflict_id: str) -> Conflict | None:
        async with self._lock, self._session() as db:
            row = await db.get(ConflictRow, conflict_id)
            if row is None or row.user_id != user_id or row.device_id != device_id:
                return None
            return _conflict_from_row(row)

    async def resolve_conflict(self, user_id: int, device_id: str, conflict_id: str) -> bool:
        """Drop a conflict and the pending change it holds back."""
        async with self._lock:
            async with self._session() as db:
                row = await db.get(ConflictRow, conflict_id)
                if row is None or row.user_id != user_id or row.device_id != device_id:
                    return False
                await db.execute(delete(OutboxRow).where(OutboxRow.idempotency_key == row.idempotency_key))
                await db.delete(row)
                await db.commit()
                return True

    # --- Reset ---

    async def reset(self, user_id: int, device_id: str) -> SyncCursor:
        """Zero the cursor and discard conflict history. The outbox is kept."""
        async with self._lock:
            async with self._session() as db:
                row = await self._cursor_row(db, user_id, device_id)
                row.last_event_id = None
                row.last_sync_at = None
                row.updated_at = utcnow()
                await db.execute(
                    delete(ConflictRow).where(ConflictRow.user_id == user_id, ConflictRow.device_id == device_id)
                )
                cursor = await self._to_cursor(db, row)
                await db.commit()
                log.info("Reset sync state for user %s device %s", user_id, device_id)
                return cursor
