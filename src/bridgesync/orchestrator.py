"""Sync orchestrator: push -> pull -> resolve cycles and the periodic checker."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Literal, TypeVar

from bridgesync import events as ev
from bridgesync.backoff import BackoffPolicy, BackoffState
from bridgesync.conflicts import ConflictResolver
from bridgesync.errors import BridgeSyncError, ErrorKind, classify_error
from bridgesync.events import EventBus
from bridgesync.models.base import utcnow
from bridgesync.models.errors import ErrorInfo
from bridgesync.models.sync import (
    Conflict,
    ConflictResolution,
    CycleStatus,
    PullResult,
    SmartPullResult,
    SyncReport,
)
from bridgesync.pull import ProgressCallback, PullEngine
from bridgesync.push import PushEngine
from bridgesync.store import SyncStateStore

log = logging.getLogger(__name__)

T = TypeVar("T")

ApplyCallback = Callable[[PullResult | SmartPullResult], Awaitable[None]]
DecideCallback = Callable[[list[Conflict]], Awaitable[list[ConflictResolution]]]


class SyncState(str, enum.Enum):
    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    RESOLVING = "resolving"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Single-flight
# ---------------------------------------------------------------------------


class SingleFlight:
    """At most one running task per key; late callers share its result.

    A cancellation request belongs to the key's running task, so any caller
    that joined it can stop it.
    """

    def __init__(self) -> None:
        self._tasks: dict[Hashable, asyncio.Task[Any]] = {}
        self._cancel_requested: set[Hashable] = set()

    def in_flight(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def request_cancel(self, key: Hashable) -> bool:
        """Flag the running task for ``key``; False when nothing is running."""
        if not self.in_flight(key):
            return False
        self._cancel_requested.add(key)
        return True

    def cancel_requested(self, key: Hashable) -> bool:
        return key in self._cancel_requested

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._tasks.get(key)
        if task is None or task.done():
            self._cancel_requested.discard(key)
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task

            def _forget(done: asyncio.Task[Any], key: Hashable = key) -> None:
                if self._tasks.get(key) is done:
                    del self._tasks[key]
                    self._cancel_requested.discard(key)

            task.add_done_callback(_forget)
        else:
            log.debug("Joining in-flight sync for %s", key)
        # A waiter being cancelled must not cancel the shared cycle.
        return await asyncio.shield(task)


default_flights = SingleFlight()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SyncOrchestrator:
    def __init__(
        self,
        push: PushEngine,
        pull: PullEngine,
        resolver: ConflictResolver,
        store: SyncStateStore,
        events: EventBus | None = None,
        *,
        user_id: int,
        device_id: str,
        mode: Literal["batch", "smart"] = "batch",
        models: list[str] | None = None,
        batch_size: int | None = None,
        smart_pull_limit: int | None = None,
        apply: ApplyCallback | None = None,
        decide: DecideCallback | None = None,
        on_progress: ProgressCallback | None = None,
        flights: SingleFlight | None = None,
        backoff: BackoffPolicy | None = None,
        check_interval: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._push = push
        self._pull = pull
        self._resolver = resolver
        self._store = store
        self._events = events or EventBus()
        self.user_id = user_id
        self.device_id = device_id
        self.mode = mode
        self.models = models
        self.batch_size = batch_size
        self.smart_pull_limit = smart_pull_limit
        self.apply = apply
        self.decide = decide
        self.on_progress = on_progress
        self._flights = flights if flights is not None else default_flights
        self.backoff = BackoffState(backoff or BackoffPolicy())
        self.check_interval = check_interval
        self._sleep = sleep

        self._state = SyncState.IDLE
        self._periodic: asyncio.Task[None] | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def running(self) -> bool:
        return self._flights.in_flight(self._key)

    @property
    def _key(self) -> tuple[int, str]:
        return (self.user_id, self.device_id)

    # --- Cycle ---

    async def sync(self) -> SyncReport:
        """Run one cycle, or join the one already running for this user/device."""
        return await self._flights.run(self._key, self._cycle)

    def cancel(self) -> None:
        """Stop the running cycle after its in-flight call returns.

        The request is attached to the shared flight, so it reaches the cycle
        even when another orchestrator for the same user/device started it.
        """
        if self._flights.request_cancel(self._key):
            log.info("Cancellation requested for sync of %s/%s", self.user_id, self.device_id)

    @property
    def _cancel_requested(self) -> bool:
        return self._flights.cancel_requested(self._key)

    def _cancelled(self, report: SyncReport) -> SyncReport:
        report.status = CycleStatus.CANCELLED
        log.info("Sync cycle %s cancelled during %s", report.cycle_id, self._state.value)
        return report

    async def _cycle(self) -> SyncReport:
        report = SyncReport(user_id=self.user_id, device_id=self.device_id)
        await self._events.emit(
            ev.SYNC_STARTED, cycle_id=report.cycle_id, user_id=self.user_id, device_id=self.device_id, mode=self.mode,
        )
        try:
            self._state = SyncState.PUSHING
            report.push = await self._push.push(self.user_id, self.device_id)
            if self._cancel_requested:
                return self._cancelled(report)

            self._state = SyncState.PULLING
            if self.mode == "smart" and self.apply is not None:
                report.smart_pull = await self._pull.drain(
                    self.user_id, self.device_id, self.apply,
                    limit=self.smart_pull_limit,
                    models=self.models,
                    on_progress=self.on_progress,
                    should_stop=lambda: self._cancel_requested,
                )
                report.acknowledged = bool(report.smart_pull.events)
                if self._cancel_requested:
                    return self._cancelled(report)
            else:
                payload = await self._pull_once(report)
                if self._cancel_requested:
                    return self._cancelled(report)

                if self.apply is not None and _has_content(payload):
                    await self.apply(payload)
                    await self._pull.acknowledge(self.user_id, self.device_id, payload)
                    report.acknowledged = True

            report.conflicts = await self._store.conflicts(self.user_id, self.device_id)
            if report.conflicts and self.decide is not None:
                if self._cancel_requested:
                    return self._cancelled(report)
                self._state = SyncState.RESOLVING
                decisions = await self.decide(list(report.conflicts))
                if decisions:
                    report.resolution = await self._resolver.resolve(self.user_id, self.device_id, decisions)
                    report.conflicts = await self._store.conflicts(self.user_id, self.device_id)

            report.status = CycleStatus.COMPLETED
            await self._events.emit(
                ev.SYNC_COMPLETED,
                cycle_id=report.cycle_id,
                user_id=self.user_id,
                device_id=self.device_id,
                pushed=len(report.push.successful) if report.push else 0,
                conflicts=len(report.conflicts),
            )
            return report
        except Exception as exc:
            self._state = SyncState.FAILED
            kind = classify_error(exc)
            report.status = CycleStatus.FAILED
            report.error = str(exc)
            report.error_kind = kind.value
            if isinstance(exc, BridgeSyncError):
                report.error_detail = ErrorInfo.model_validate(exc.to_dict())
            log.warning("Sync cycle %s failed (%s): %s", report.cycle_id, kind.value, exc)
            await self._events.emit(
                ev.SYNC_FAILED,
                cycle_id=report.cycle_id,
                user_id=self.user_id,
                device_id=self.device_id,
                error=str(exc),
                error_kind=kind.value,
            )
            if kind is ErrorKind.TRANSIENT:
                return report
            raise
        finally:
            report.finished_at = utcnow()
            self._state = SyncState.IDLE

    async def _pull_once(self, report: SyncReport) -> PullResult | SmartPullResult:
        if self.mode == "smart":
            report.smart_pull = await self._pull.smart_pull(
                self.user_id, self.device_id, limit=self.smart_pull_limit, models=self.models,
            )
            return report.smart_pull
        report.pull = await self._pull.pull(self.device_id, models=self.models, batch_size=self.batch_size)
        return report.pull

    # --- Periodic checker ---

    async def check_once(self) -> SyncReport | None:
        """Run a cycle if the server has updates or the outbox is non-empty."""
        info = await self._pull.check_updates(self.user_id, self.device_id)
        pending = await self._store.pending_count(self.user_id, self.device_id)
        if not info.has_updates and not pending:
            log.debug("No updates and empty outbox for %s/%s", self.user_id, self.device_id)
            return None
        return await self.sync()

    async def _periodic_loop(self, interval: float) -> None:
        while True:
            try:
                report = await self.check_once()
                failed = report is not None and report.status is CycleStatus.FAILED
            except Exception:
                log.exception("Periodic sync check failed")
                failed = True

            if failed:
                delay = self.backoff.next_delay()
                if delay is None:
                    log.warning("Backoff exhausted after %d attempts, resuming regular interval", self.backoff.attempt)
                    self.backoff.reset()
                    delay = interval
            else:
                self.backoff.reset()
                delay = interval
            log.debug("Next update check in %.1fs", delay)
            await self._sleep(delay)

    def start_periodic(self, interval: float | None = None) -> asyncio.Task[None]:
        if self._periodic is not None and not self._periodic.done():
            return self._periodic
        self._periodic = asyncio.create_task(self._periodic_loop(interval or self.check_interval))
        log.info("Periodic update checker started")
        return self._periodic

    async def stop_periodic(self) -> None:
        task, self._periodic = self._periodic, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("Periodic update checker stopped")


def _has_content(payload: PullResult | SmartPullResult) -> bool:
    if isinstance(payload, SmartPullResult):
        return bool(payload.events)
    return bool(payload.data)
