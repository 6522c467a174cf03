"""Per-project debounced, single-flight sync scheduling.

Each registered project runs the state machine::

    IDLE --change--> DEBOUNCING --timer--> SYNCING --done--> IDLE

Changes arriving while a pass is in flight mark the project dirty; a new
debounce cycle is armed as soon as that pass finishes, so no change is lost
and no two passes for one project ever overlap.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

from cli.uploader import SyncOutcome

logger = logging.getLogger(__name__)

SyncRunner = Callable[[], Awaitable[SyncOutcome]]


class SyncState(StrEnum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    SYNCING = "syncing"


class SyncEventType(StrEnum):
    STARTED = "sync-started"
    COMPLETE = "sync-complete"
    ERROR = "sync-error"


@dataclass(frozen=True)
class SyncEvent:
    type: SyncEventType
    project_id: str
    outcome: SyncOutcome | None = None
    error: Exception | None = None


SyncListener = Callable[[SyncEvent], None]


@dataclass(frozen=True)
class SchedulerStats:
    passes: int
    dropped: int


@dataclass
class _ProjectSlot:
    project_id: str
    runner: SyncRunner
    state: SyncState = SyncState.IDLE
    dirty: bool = False
    timer: asyncio.Task[None] | None = None
    in_flight: asyncio.Task[SyncOutcome | None] | None = None
    passes: int = 0
    dropped: int = 0
    removed: bool = False


class SyncScheduler:
    """Registry of projects, each with its own debounce timer and in-flight guard."""

    def __init__(self, debounce_seconds: float = 5.0) -> None:
        self.debounce_seconds = debounce_seconds
        self._slots: dict[str, _ProjectSlot] = {}
        self._listeners: list[SyncListener] = []
        self._closed = False

    def register(self, project_id: str, runner: SyncRunner) -> None:
        if project_id in self._slots:
            raise ValueError(f"Project already registered: {project_id}")
        self._slots[project_id] = _ProjectSlot(project_id=project_id, runner=runner)

    def unregister(self, project_id: str) -> None:
        """Forget a project. A pass already in flight still runs to completion,
        but nothing is scheduled after it.
        """
        slot = self._slots.pop(project_id, None)
        if slot is None:
            return
        slot.removed = True
        if slot.timer is not None:
            slot.timer.cancel()
            slot.timer = None

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        """Receive every ``SyncEvent``; returns a function that unsubscribes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def state(self, project_id: str) -> SyncState:
        return self._slot(project_id).state

    def stats(self, project_id: str) -> SchedulerStats:
        slot = self._slot(project_id)
        return SchedulerStats(passes=slot.passes, dropped=slot.dropped)

    def _slot(self, project_id: str) -> _ProjectSlot:
        try:
            return self._slots[project_id]
        except KeyError:
            raise KeyError(f"Unknown project: {project_id}") from None

    def notify_change(self, project_id: str, path: str | None = None) -> None:
        """Record a filesystem mutation and (re)start the project's debounce timer."""
        if self._closed:
            return
        slot = self._slots.get(project_id)
        if slot is None:
            logger.debug("Change for unregistered project %s ignored", project_id)
            return
        if path is not None:
            logger.debug("Change in project %s: %s", project_id, path)
        if slot.state is SyncState.SYNCING:
            slot.dirty = True
        else:
            slot.state = SyncState.DEBOUNCING
        self._arm(slot)

    def _arm(self, slot: _ProjectSlot) -> None:
        if slot.timer is not None:
            slot.timer.cancel()
        slot.timer = asyncio.create_task(self._debounce(slot))

    async def _debounce(self, slot: _ProjectSlot) -> None:
        await asyncio.sleep(self.debounce_seconds)
        slot.timer = None
        if slot.removed:
            return
        if slot.state is SyncState.SYNCING:
            slot.dropped += 1
            logger.info("Sync already running for project %s, timer dropped", slot.project_id)
            return
        self._start(slot)

    def _start(self, slot: _ProjectSlot) -> asyncio.Task[SyncOutcome | None]:
        slot.state = SyncState.SYNCING
        slot.dirty = False
        slot.in_flight = asyncio.create_task(self._run(slot))
        return slot.in_flight

    async def _run(self, slot: _ProjectSlot) -> SyncOutcome | None:
        self._emit(SyncEvent(SyncEventType.STARTED, slot.project_id))
        outcome: SyncOutcome | None = None
        try:
            outcome = await slot.runner()
        except Exception as exc:
            logger.exception("Sync pass for project %s failed", slot.project_id)
            self._emit(SyncEvent(SyncEventType.ERROR, slot.project_id, error=exc))
        else:
            self._emit(SyncEvent(SyncEventType.COMPLETE, slot.project_id, outcome=outcome))
        finally:
            slot.passes += 1
            slot.in_flight = None
            if slot.timer is not None:
                slot.state = SyncState.DEBOUNCING
            elif slot.dirty and not self._closed and not slot.removed:
                slot.state = SyncState.DEBOUNCING
                self._arm(slot)
            else:
                slot.state = SyncState.IDLE
        return outcome

    def _emit(self, event: SyncEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.warning("Error in sync event listener: %s", exc)

    async def flush(self, project_id: str) -> SyncOutcome | None:
        """Run a pass now, after any in-flight pass. Returns None if the pass failed."""
        slot = self._slot(project_id)
        while slot.in_flight is not None:
            await slot.in_flight
        if slot.timer is not None:
            slot.timer.cancel()
            slot.timer = None
        return await self._start(slot)

    async def drain(self) -> None:
        """Wait until no project has a pending timer or an in-flight pass."""
        while True:
            pending = [
                task
                for slot in self._slots.values()
                for task in (slot.timer, slot.in_flight)
                if task is not None
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        """Cancel pending timers and wait for in-flight passes to finish."""
        self._closed = True
        in_flight = []
        for slot in self._slots.values():
            if slot.timer is not None:
                slot.timer.cancel()
                slot.timer = None
            if slot.in_flight is not None:
                in_flight.append(slot.in_flight)
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
