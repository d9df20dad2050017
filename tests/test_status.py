"""Status reporter: totals, bounded history, offline meters."""

from datetime import timedelta

from meter_collector.common.models import (
    CollectionError,
    DeviceOutcome,
    ErrorOperation,
    RecoveryMethod,
    TimeoutEvent,
    utc_now,
)
from meter_collector.services.collection.cycle_manager import new_cycle_result
from meter_collector.services.collection.status import StatusReporter


def _finished(readings=0, errors=(), outcomes=None, timeouts=(), meter_readings=None):
    result = new_cycle_result()
    result.readings_collected = readings
    result.meter_readings.update(meter_readings or {})
    for error in errors:
        result.add_error(error)
    result.meter_outcomes.update(outcomes or {})
    result.meters_processed = len(result.meter_outcomes)
    for event in timeouts:
        result.timeout_metrics.record(event)
    return result.finalize(result.start_time + timedelta(seconds=1))


def _connect_error(meter_id):
    return CollectionError(meter_id=meter_id, operation=ErrorOperation.CONNECT, message="no response")


class TestTotals:
    def test_totals_accumulate_per_cycle(self):
        reporter = StatusReporter()

        reporter.record_cycle_end(_finished(readings=5))
        reporter.record_cycle_end(_finished(readings=3, errors=[_connect_error("m1")]))

        status = reporter.get_status()
        assert status.totals == {"cycles": 2, "readings": 8, "errors": 1}
        assert status.last_cycle.readings_collected == 3

    def test_history_is_bounded_oldest_first_out(self):
        reporter = StatusReporter(history_size=3)
        cycles = [_finished(readings=i) for i in range(5)]

        for cycle in cycles:
            reporter.record_cycle_end(cycle)

        history = reporter.get_status().history
        assert [c.cycle_id for c in history] == [c.cycle_id for c in cycles[2:]]
        assert reporter.get_status().totals["cycles"] == 5

    def test_current_cycle_cleared_at_end(self):
        reporter = StatusReporter()
        live = new_cycle_result("manual")

        reporter.record_cycle_start(live)
        assert reporter.get_status(is_running=True).current_cycle is live

        reporter.record_cycle_end(live.finalize())
        status = reporter.get_status()
        assert status.current_cycle is None
        assert status.last_cycle.trigger == "manual"

    def test_status_dict(self):
        reporter = StatusReporter()
        reporter.record_cycle_end(_finished(readings=2))

        data = reporter.get_status(is_running=True, scheduler_state="scheduled").to_dict()

        assert data["is_running"] is True
        assert data["scheduler_state"] == "scheduled"
        assert data["current_cycle"] is None
        assert data["last_cycle"]["readings_collected"] == 2
        assert len(data["history"]) == 1


class TestOfflineMeters:
    def test_connect_failures_tracked_until_recovery(self):
        reporter = StatusReporter()

        reporter.record_cycle_end(_finished(
            errors=[_connect_error("m1")], outcomes={"m1": DeviceOutcome.FAILED}
        ))
        reporter.record_cycle_end(_finished(
            errors=[_connect_error("m1")], outcomes={"m1": DeviceOutcome.FAILED}
        ))

        (offline,) = reporter.get_status().offline_meters
        assert offline.meter_id == "m1"
        assert offline.consecutive_failures == 2
        assert offline.offline_since <= offline.last_checked_at

        reporter.record_cycle_end(_finished(
            readings=2, outcomes={"m1": DeviceOutcome.DONE}, meter_readings={"m1": 2}
        ))

        assert reporter.get_status().offline_meters == ()

    def test_connected_meter_without_readings_stays_offline(self):
        reporter = StatusReporter()
        reporter.record_cycle_end(_finished(
            errors=[_connect_error("m1")], outcomes={"m1": DeviceOutcome.FAILED}
        ))

        read_error = CollectionError(
            meter_id="m1", operation=ErrorOperation.READ, message="timeout", data_point="kwh"
        )
        reporter.record_cycle_end(_finished(
            errors=[read_error], outcomes={"m1": DeviceOutcome.DONE}
        ))

        (offline,) = reporter.get_status().offline_meters
        assert offline.meter_id == "m1"
        assert offline.consecutive_failures == 1


class TestTimeoutMetrics:
    def test_metrics_merge_and_slow_meters(self):
        reporter = StatusReporter(slow_meter_threshold=2)
        event = TimeoutEvent(
            meter_id="m1",
            timestamp=utc_now(),
            timeout_ms=5000,
            batch_size=10,
            recovery_method=RecoveryMethod.BATCH_REDUCED,
        )

        reporter.record_cycle_end(_finished(timeouts=[event]))
        assert reporter.slow_meters == frozenset()

        reporter.record_cycle_end(_finished(timeouts=[event]))

        assert reporter.slow_meters == {"m1"}
        assert reporter.get_status().timeout_metrics.total_timeouts == 2
