"""
Status Reporter

Live and historical view of collection activity.

Counters change only when a cycle ends, under one lock, so readers never
see a half-applied cycle. Also tracks cumulative timeout metrics and
meters that are currently unreachable.
"""

import threading
from collections import deque

from meter_collector.common.logging_setup import get_service_logger
from meter_collector.common.models import (
    AgentStatus,
    CycleResult,
    ErrorOperation,
    OfflineMeterStatus,
    TimeoutMetrics,
)

logger = get_service_logger("collection.status")

SLOW_METER_TIMEOUTS = 3


class StatusReporter:
    def __init__(self, history_size: int = 20, slow_meter_threshold: int = SLOW_METER_TIMEOUTS):
        self._lock = threading.Lock()
        self._history: deque[CycleResult] = deque(maxlen=max(1, history_size))
        self._current: CycleResult | None = None
        self._last: CycleResult | None = None
        self._totals = {"cycles": 0, "readings": 0, "errors": 0}
        self._timeout_metrics = TimeoutMetrics()
        self._offline: dict[str, OfflineMeterStatus] = {}
        self._slow_meters: set[str] = set()
        self.slow_meter_threshold = slow_meter_threshold

    def record_cycle_start(self, result: CycleResult) -> None:
        with self._lock:
            self._current = result

    def record_cycle_end(self, result: CycleResult) -> None:
        """Fold a finished cycle into totals and history"""
        with self._lock:
            if self._current is not None and self._current.cycle_id == result.cycle_id:
                self._current = None

            self._totals["cycles"] += 1
            self._totals["readings"] += result.readings_collected
            self._totals["errors"] += len(result.errors)
            self._history.append(result)
            self._last = result

            self._timeout_metrics.merge(result.timeout_metrics)
            self._update_offline(result)
            newly_slow = self._find_slow_meters()

        for meter_id in newly_slow:
            logger.warning(
                f"Slow meter {meter_id}: {self._timeout_metrics.timeouts_by_meter[meter_id]} timeouts",
                extra={"meter_id": meter_id},
            )

    def _update_offline(self, result: CycleResult) -> None:
        checked_at = result.end_time or result.start_time
        failed = {
            e.meter_id for e in result.errors if e.operation == ErrorOperation.CONNECT
        }

        for meter_id in failed:
            previous = self._offline.get(meter_id)
            if previous is None:
                logger.warning(f"Meter {meter_id} offline", extra={"meter_id": meter_id})
            self._offline[meter_id] = OfflineMeterStatus(
                meter_id=meter_id,
                offline_since=previous.offline_since if previous else checked_at,
                last_checked_at=checked_at,
                consecutive_failures=(previous.consecutive_failures if previous else 0) + 1,
            )

        # Connecting is not enough, the meter must produce a reading
        for meter_id, count in result.meter_readings.items():
            if count > 0 and meter_id in self._offline:
                del self._offline[meter_id]
                logger.info(f"Meter {meter_id} back online", extra={"meter_id": meter_id})

    def _find_slow_meters(self) -> list[str]:
        newly_slow = []
        for meter_id, count in self._timeout_metrics.timeouts_by_meter.items():
            if count >= self.slow_meter_threshold and meter_id not in self._slow_meters:
                self._slow_meters.add(meter_id)
                newly_slow.append(meter_id)
        return newly_slow

    @property
    def slow_meters(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._slow_meters)

    def get_status(self, is_running: bool = False, scheduler_state: str = "idle") -> AgentStatus:
        with self._lock:
            return AgentStatus(
                is_running=is_running,
                scheduler_state=scheduler_state,
                current_cycle=self._current,
                last_cycle=self._last,
                totals=dict(self._totals),
                history=tuple(self._history),
                offline_meters=tuple(self._offline.values()),
                timeout_metrics=self._timeout_metrics.copy(),
            )
