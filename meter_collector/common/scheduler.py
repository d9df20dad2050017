"""
Collection Cycle Scheduler

Fires the collection callback at fixed wall-clock intervals, and is the
single gate through which both scheduled and manual cycles start.

Like a drift-aware interval loop, this scheduler:
- Fires at exact wall-clock boundaries
- Tracks cumulative drift
- Skips missed intervals instead of queueing them
- Reports drift metrics for observability

On top of that it owns an explicit state machine:

    IDLE -> SCHEDULED -> RUNNING -> SCHEDULED ... (loop)
    any state -> STOPPING -> STOPPED

A run request (timer tick or manual trigger) that arrives while a cycle is
RUNNING is dropped, never queued.

Usage:
    async def run_cycle(trigger: str) -> CycleResult:
        ...

    scheduler = CycleScheduler(60.0, run_cycle)
    await scheduler.start()

    result = await scheduler.try_run("manual")   # None when busy

    await scheduler.stop()   # waits for an in-flight cycle
"""

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")

T = TypeVar("T")

# Lateness beyond this is a wall clock jump, not scheduling drift
CLOCK_JUMP_SECONDS = 30


class SchedulerState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class CycleScheduler:
    """
    Precise, non-overlapping interval scheduler.

    Attributes:
        interval: The interval in seconds between executions
        callback: Async function called with the trigger name ("scheduled"/"manual")
        drift_seconds: Total accumulated drift (for observability)
        skipped_count: Ticks dropped because a cycle was running or late
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[str], Awaitable[T]],
        name: str = "collection",
        align_to_interval: bool = True,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        self.align_to_interval = align_to_interval

        self._state = SchedulerState.IDLE
        self._state_lock = asyncio.Lock()
        self._idle = asyncio.Event()
        self._idle.set()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._next_run: float = 0

        # Observability metrics
        self._drift_total: float = 0
        self._skipped_count: int = 0
        self._rejected_count: int = 0
        self._execution_count: int = 0
        self._last_execution_time: float = 0
        self._last_drift_ms: float = 0

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running_cycle(self) -> bool:
        return self._state == SchedulerState.RUNNING

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    @property
    def stop_event(self) -> asyncio.Event:
        """Set once shutdown begins; cycles check it between devices."""
        return self._stop_event

    async def start(self) -> None:
        """Start the periodic loop in a background task."""
        async with self._state_lock:
            if self._state in (SchedulerState.STOPPING, SchedulerState.STOPPED):
                raise RuntimeError(f"Scheduler '{self.name}' has been stopped")
            if self._task is not None:
                return
            if self._state == SchedulerState.IDLE:
                self._state = SchedulerState.SCHEDULED

        self._task = asyncio.create_task(self._run(), name=f"scheduler-{self.name}")
        logger.info(f"Scheduler '{self.name}' started (interval {self.interval}s)")

    async def stop(self) -> None:
        """
        Stop scheduling and wait for any in-flight cycle to finish.

        Safe to call when idle, before start() or more than once.
        """
        async with self._state_lock:
            if self._state == SchedulerState.STOPPED:
                return
            self._state = SchedulerState.STOPPING
            self._stop_event.set()

        if self._task is not None:
            await self._task
            self._task = None

        # A manual cycle may still be running outside the loop task
        await self._idle.wait()

        async with self._state_lock:
            self._state = SchedulerState.STOPPED

        logger.info(f"Scheduler '{self.name}' stopped")

    async def try_run(self, trigger: str = "manual") -> T | None:
        """
        Run one cycle unless another is in progress.

        Returns:
            The callback's result, or None when the request was rejected
            (cycle in progress or scheduler stopping).
        """
        async with self._state_lock:
            if self._state in (SchedulerState.STOPPING, SchedulerState.STOPPED):
                logger.info(f"Rejected {trigger} cycle: scheduler '{self.name}' is {self._state.value}")
                self._rejected_count += 1
                return None
            if self._state == SchedulerState.RUNNING:
                logger.warning(f"Rejected {trigger} cycle: previous cycle still executing")
                self._rejected_count += 1
                return None
            self._state = SchedulerState.RUNNING
            self._idle.clear()

        start = time.monotonic()
        try:
            result = await self.callback(trigger)
            self._execution_count += 1
            return result
        finally:
            self._last_execution_time = time.monotonic() - start
            async with self._state_lock:
                if self._state == SchedulerState.RUNNING:
                    self._state = (
                        SchedulerState.SCHEDULED if self._task is not None else SchedulerState.IDLE
                    )
            self._idle.set()

    async def _sleep_until_next(self) -> bool:
        """Sleep until the next boundary; False when stop was requested."""
        sleep_duration = self._next_run - time.time()
        if sleep_duration <= 0:
            return not self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_duration)
            return False
        except asyncio.TimeoutError:
            return True

    def _record_drift(self, now: float) -> None:
        """Track how late this tick fired relative to its boundary."""
        drift = now - self._next_run
        if drift > CLOCK_JUMP_SECONDS:
            # Clock jump (NTP sync after boot, suspend/resume): not counted as
            # drift; the skip loop after the cycle moves past the missed ticks
            logger.info(
                f"Scheduler '{self.name}' clock jump detected ({drift:.0f}s), "
                f"excluded from drift"
            )
            self._last_drift_ms = 0
        else:
            self._drift_total += max(0, drift)
            self._last_drift_ms = drift * 1000

    async def _run(self) -> None:
        """Main loop that fires the cycle at exact intervals."""
        now = time.time()
        if self.align_to_interval:
            self._next_run = ((now // self.interval) + 1) * self.interval
        else:
            self._next_run = now + self.interval

        while not self._stop_event.is_set():
            if not await self._sleep_until_next():
                break

            self._record_drift(time.time())

            try:
                result = await self.try_run("scheduled")
                if result is None and not self._stop_event.is_set():
                    self._skipped_count += 1
            except Exception as e:
                logger.error(f"Scheduled cycle '{self.name}' error: {e}", exc_info=True)

            # Skip missed intervals (don't queue up missed executions)
            now = time.time()
            skipped = 0
            while self._next_run <= now:
                self._next_run += self.interval
                skipped += 1

            # First skip is the tick we just handled
            if skipped > 1:
                self._skipped_count += skipped - 1
                logger.warning(
                    f"Scheduler '{self.name}' skipped {skipped - 1} intervals "
                    f"(execution took {self._last_execution_time:.3f}s)"
                )

    @property
    def drift_seconds(self) -> float:
        """Total accumulated drift in seconds."""
        return self._drift_total

    @property
    def drift_ms(self) -> float:
        """Most recent drift in milliseconds."""
        return self._last_drift_ms

    @property
    def skipped_count(self) -> int:
        """Number of timer ticks that did not start a cycle."""
        return self._skipped_count

    @property
    def rejected_count(self) -> int:
        """Number of run requests rejected by the gate."""
        return self._rejected_count

    @property
    def execution_count(self) -> int:
        """Total number of completed executions."""
        return self._execution_count

    @property
    def last_execution_time(self) -> float:
        """Duration of last callback execution in seconds."""
        return self._last_execution_time

    def get_stats(self) -> dict:
        """Get scheduler statistics for observability."""
        return {
            "name": self.name,
            "state": self._state.value,
            "interval_s": self.interval,
            "execution_count": self._execution_count,
            "drift_total_s": round(self._drift_total, 3),
            "drift_last_ms": round(self._last_drift_ms, 1),
            "skipped_count": self._skipped_count,
            "rejected_count": self._rejected_count,
            "last_execution_s": round(self._last_execution_time, 3),
        }
