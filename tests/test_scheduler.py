"""Scheduler gate: one cycle at a time, no queueing, graceful stop."""

import asyncio
import logging

import pytest

from meter_collector.common.scheduler import CLOCK_JUMP_SECONDS, CycleScheduler, SchedulerState


class GatedCallback:
    """Callback that blocks until released, recording each trigger."""

    def __init__(self):
        self.triggers: list[str] = []
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.finished = 0

    async def __call__(self, trigger: str) -> str:
        self.triggers.append(trigger)
        self.entered.set()
        await self.release.wait()
        self.finished += 1
        return f"done-{trigger}"


class TestTryRun:
    async def test_returns_callback_result(self):
        callback = GatedCallback()
        callback.release.set()
        scheduler = CycleScheduler(60, callback)

        assert await scheduler.try_run("manual") == "done-manual"
        assert scheduler.state == SchedulerState.IDLE
        assert scheduler.execution_count == 1

    async def test_second_request_rejected_while_running(self):
        callback = GatedCallback()
        scheduler = CycleScheduler(60, callback)

        first = asyncio.create_task(scheduler.try_run("manual"))
        await callback.entered.wait()
        assert scheduler.state == SchedulerState.RUNNING

        assert await scheduler.try_run("manual") is None
        assert scheduler.rejected_count == 1

        callback.release.set()
        assert await first == "done-manual"
        assert callback.triggers == ["manual"]

    async def test_callback_error_releases_gate(self):
        async def broken(trigger):
            raise RuntimeError("boom")

        scheduler = CycleScheduler(60, broken)

        with pytest.raises(RuntimeError):
            await scheduler.try_run()

        assert scheduler.state == SchedulerState.IDLE
        assert not scheduler.is_running_cycle

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            CycleScheduler(0, GatedCallback())


class TestStop:
    async def test_stop_waits_for_in_flight_cycle(self):
        callback = GatedCallback()
        scheduler = CycleScheduler(60, callback)
        await scheduler.start()

        running = asyncio.create_task(scheduler.try_run("manual"))
        await callback.entered.wait()

        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()
        assert scheduler.state == SchedulerState.STOPPING
        assert scheduler.stop_event.is_set()

        callback.release.set()
        await stopping

        assert callback.finished == 1
        assert await running == "done-manual"
        assert scheduler.state == SchedulerState.STOPPED

    async def test_stop_without_start_and_twice(self):
        scheduler = CycleScheduler(60, GatedCallback())

        await scheduler.stop()
        await scheduler.stop()

        assert scheduler.state == SchedulerState.STOPPED

    async def test_requests_after_stop_are_rejected(self):
        callback = GatedCallback()
        scheduler = CycleScheduler(60, callback)
        await scheduler.stop()

        assert await scheduler.try_run("manual") is None
        assert callback.triggers == []
        with pytest.raises(RuntimeError):
            await scheduler.start()


class TestLoop:
    async def test_fires_scheduled_cycles(self):
        callback = GatedCallback()
        callback.release.set()
        scheduler = CycleScheduler(0.05, callback, align_to_interval=False)

        await scheduler.start()
        assert scheduler.state == SchedulerState.SCHEDULED
        await asyncio.sleep(0.18)
        await scheduler.stop()

        assert len(callback.triggers) >= 2
        assert set(callback.triggers) == {"scheduled"}
        assert scheduler.get_stats()["state"] == "stopped"

    async def test_tick_during_long_cycle_is_skipped(self):
        callback = GatedCallback()
        scheduler = CycleScheduler(0.03, callback, align_to_interval=False)
        await scheduler.start()

        manual = asyncio.create_task(scheduler.try_run("manual"))
        await callback.entered.wait()
        await asyncio.sleep(0.1)
        callback.release.set()
        await manual
        await scheduler.stop()

        assert callback.triggers[0] == "manual"
        assert scheduler.skipped_count >= 1


class TestDrift:
    def test_late_tick_counts_as_drift(self):
        scheduler = CycleScheduler(60, GatedCallback())
        scheduler._next_run = 1000.0

        scheduler._record_drift(1000.25)

        assert scheduler.drift_ms == pytest.approx(250)
        assert scheduler.drift_seconds == pytest.approx(0.25)

    def test_clock_jump_is_not_drift(self, caplog):
        scheduler = CycleScheduler(60, GatedCallback())
        scheduler._next_run = 1000.0

        with caplog.at_level(logging.INFO, logger="meter_collector"):
            scheduler._record_drift(1000.0 + CLOCK_JUMP_SECONDS + 600)

        assert scheduler.drift_ms == 0
        assert scheduler.drift_seconds == 0
        assert any("excluded from drift" in r.getMessage() for r in caplog.records)
