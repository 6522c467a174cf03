"""Tests for the per-project debounced sync scheduler."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator

import pytest

from cli.scheduler import SyncEvent, SyncEventType, SyncScheduler, SyncState
from cli.uploader import SyncOutcome

DEBOUNCE = 0.02


class Runner:
    """Counts passes and optionally blocks each one until released."""

    def __init__(self, *, block: bool = False, error: Exception | None = None) -> None:
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        if not block:
            self.release.set()
        self.error = error

    async def __call__(self) -> SyncOutcome:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            await self.release.wait()
            if self.error is not None:
                raise self.error
            return SyncOutcome(synced=self.calls)
        finally:
            self.active -= 1


@pytest.fixture
async def scheduler() -> AsyncGenerator[SyncScheduler]:
    sched = SyncScheduler(DEBOUNCE)
    yield sched
    await sched.close()


class TestRegistry:
    async def test_duplicate_registration_rejected(self, scheduler: SyncScheduler) -> None:
        scheduler.register("p1", Runner())
        with pytest.raises(ValueError, match="already registered"):
            scheduler.register("p1", Runner())

    async def test_unknown_project(self, scheduler: SyncScheduler) -> None:
        with pytest.raises(KeyError):
            scheduler.stats("nope")
        scheduler.notify_change("nope", "/a.txt")

    async def test_unregister_cancels_timer(self, scheduler: SyncScheduler) -> None:
        runner = Runner()
        scheduler.register("p1", runner)
        scheduler.notify_change("p1")
        scheduler.unregister("p1")
        await asyncio.sleep(DEBOUNCE * 3)
        assert runner.calls == 0

    async def test_unregister_during_pass_schedules_nothing_after_it(
        self, scheduler: SyncScheduler
    ) -> None:
        runner = Runner(block=True)
        scheduler.register("p1", runner)
        scheduler.notify_change("p1")
        await runner.started.wait()
        scheduler.notify_change("p1", "/late.txt")
        await asyncio.sleep(DEBOUNCE * 5)
        assert scheduler.stats("p1").dropped == 1

        scheduler.unregister("p1")
        runner.release.set()
        await asyncio.sleep(DEBOUNCE * 5)
        assert runner.calls == 1
        assert runner.active == 0

    async def test_unregister_twice_is_harmless(self, scheduler: SyncScheduler) -> None:
        scheduler.register("p1", Runner())
        scheduler.unregister("p1")
        scheduler.unregister("p1")
        with pytest.raises(KeyError):
            scheduler.state("p1")


class TestDebounce:
    async def test_burst_coalesces_into_one_pass(self, scheduler: SyncScheduler) -> None:
        runner = Runner()
        scheduler.register("p1", runner)
        for i in range(5):
            scheduler.notify_change("p1", f"/f{i}.txt")
        assert scheduler.state("p1") is SyncState.DEBOUNCING
        await scheduler.drain()
        assert runner.calls == 1
        assert scheduler.state("p1") is SyncState.IDLE
        assert scheduler.stats("p1").passes == 1

    async def test_projects_are_independent(self, scheduler: SyncScheduler) -> None:
        first, second = Runner(block=True), Runner()
        scheduler.register("p1", first)
        scheduler.register("p2", second)
        scheduler.notify_change("p1")
        scheduler.notify_change("p2")
        await first.started.wait()
        await second.started.wait()
        assert scheduler.state("p1") is SyncState.SYNCING
        first.release.set()
        await scheduler.drain()
        assert (first.calls, second.calls) == (1, 1)


class TestSingleFlight:
    async def test_timer_firing_during_pass_is_dropped(self, scheduler: SyncScheduler) -> None:
        runner = Runner(block=True)
        scheduler.register("p1", runner)
        scheduler.notify_change("p1")
        await runner.started.wait()
        assert scheduler.state("p1") is SyncState.SYNCING

        scheduler.notify_change("p1", "/late.txt")
        await asyncio.sleep(DEBOUNCE * 5)
        assert runner.calls == 1
        assert scheduler.stats("p1").dropped == 1

        runner.release.set()
        await scheduler.drain()
        # The change that arrived mid-pass still gets its own pass.
        assert runner.calls == 2
        assert runner.max_active == 1
        assert scheduler.stats("p1").passes == 2
        assert scheduler.state("p1") is SyncState.IDLE

    async def test_pending_timer_survives_pass_end(self, scheduler: SyncScheduler) -> None:
        runner = Runner(block=True)
        scheduler.register("p1", runner)
        scheduler.notify_change("p1")
        await runner.started.wait()
        scheduler.notify_change("p1")
        runner.release.set()
        while runner.active:
            await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert scheduler.state("p1") is SyncState.DEBOUNCING
        await scheduler.drain()
        assert runner.calls == 2
        assert scheduler.stats("p1").dropped == 0

    async def test_flush_waits_for_in_flight_pass(self, scheduler: SyncScheduler) -> None:
        runner = Runner(block=True)
        scheduler.register("p1", runner)
        scheduler.notify_change("p1")
        await runner.started.wait()
        flushed = asyncio.create_task(scheduler.flush("p1"))
        await asyncio.sleep(DEBOUNCE)
        assert runner.calls == 1
        runner.release.set()
        outcome = await flushed
        assert outcome is not None
        assert outcome.synced == 2
        assert runner.max_active == 1


class TestEvents:
    async def test_success_events(self, scheduler: SyncScheduler) -> None:
        events: list[SyncEvent] = []
        scheduler.register("p1", Runner())
        scheduler.subscribe(events.append)
        outcome = await scheduler.flush("p1")
        assert [e.type for e in events] == [SyncEventType.STARTED, SyncEventType.COMPLETE]
        assert events[1].outcome is outcome
        assert all(e.project_id == "p1" for e in events)

    async def test_failed_pass_emits_error(self, scheduler: SyncScheduler) -> None:
        events: list[SyncEvent] = []
        boom = RuntimeError("boom")
        scheduler.register("p1", Runner(error=boom))
        scheduler.subscribe(events.append)
        assert await scheduler.flush("p1") is None
        assert [e.type for e in events] == [SyncEventType.STARTED, SyncEventType.ERROR]
        assert events[1].error is boom
        assert scheduler.state("p1") is SyncState.IDLE

    async def test_listener_error_isolated(self, scheduler: SyncScheduler) -> None:
        received: list[SyncEventType] = []

        def broken(event: SyncEvent) -> None:
            raise RuntimeError("listener bug")

        scheduler.register("p1", Runner())
        scheduler.subscribe(broken)
        scheduler.subscribe(lambda e: received.append(e.type))
        outcome = await scheduler.flush("p1")
        assert outcome is not None
        assert received == [SyncEventType.STARTED, SyncEventType.COMPLETE]

    async def test_unsubscribe(self, scheduler: SyncScheduler) -> None:
        events: list[SyncEvent] = []
        scheduler.register("p1", Runner())
        unsubscribe = scheduler.subscribe(events.append)
        unsubscribe()
        unsubscribe()
        await scheduler.flush("p1")
        assert events == []


class TestClose:
    async def test_close_cancels_pending_and_ignores_new_changes(self) -> None:
        scheduler = SyncScheduler(DEBOUNCE)
        runner = Runner()
        scheduler.register("p1", runner)
        scheduler.notify_change("p1")
        await scheduler.close()
        scheduler.notify_change("p1")
        await asyncio.sleep(DEBOUNCE * 3)
        assert runner.calls == 0

    async def test_close_waits_for_in_flight(self) -> None:
        scheduler = SyncScheduler(DEBOUNCE)
        runner = Runner(block=True)
        scheduler.register("p1", runner)
        scheduler.notify_change("p1")
        await runner.started.wait()
        closing = asyncio.create_task(scheduler.close())
        await asyncio.sleep(0)
        assert not closing.done()
        runner.release.set()
        await closing
        assert scheduler.stats("p1").passes == 1
        assert runner.active == 0
