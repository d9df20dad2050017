"""
Collection Domain Models

Value types shared by the cache, the protocol client, the cycle manager
and the status reporter.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ErrorOperation(str, Enum):
    """Scope of a collection error"""
    CONNECT = "connect"
    READ = "read"
    WRITE = "write"
    CONFIG = "config"


class RecoveryMethod(str, Enum):
    """What the client did after a timeout"""
    BATCH_REDUCED = "batch_reduced"
    SEQUENTIAL = "sequential"
    OFFLINE = "offline"


class DeviceOutcome(str, Enum):
    """Terminal state of one device within a cycle"""
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class DeviceAddress:
    """BACnet/IP address of a device"""
    ip: str
    port: int

    def __str__(self) -> str:
        return f"{self.ip}:{self.port}"


@dataclass(frozen=True)
class RegisterPoint:
    """One readable property on a device"""
    object_type: str
    object_instance: int
    property_id: str = "presentValue"
    unit: str = ""


@dataclass(frozen=True)
class DeviceRegisterEntry:
    """Raw device-register association after validation"""
    device_id: int
    register_id: int
    register: int
    field_name: str
    unit: str


@dataclass(frozen=True, eq=False)
class CachedDevice:
    """
    A meter with its device address and ordered register map.

    register_map is a read-only view in configuration order; two devices
    compare equal when ids, address and the ordered map are equal.
    """
    meter_id: str
    device_id: int
    address: DeviceAddress
    register_map: Mapping[str, RegisterPoint]
    name: str = ""

    @classmethod
    def build(
        cls,
        meter_id: str,
        device_id: int,
        address: DeviceAddress,
        points: list[tuple[str, RegisterPoint]],
        name: str = "",
    ) -> "CachedDevice":
        return cls(
            meter_id=meter_id,
            device_id=device_id,
            address=address,
            register_map=MappingProxyType(dict(points)),
            name=name,
        )

    @property
    def has_registers(self) -> bool:
        return len(self.register_map) > 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CachedDevice):
            return NotImplemented
        return (
            self.meter_id == other.meter_id
            and self.device_id == other.device_id
            and self.address == other.address
            and self.name == other.name
            and list(self.register_map.items()) == list(other.register_map.items())
        )

    def __hash__(self) -> int:
        return hash((self.meter_id, self.device_id, self.address))


@dataclass(frozen=True)
class ConfigurationGap:
    """Device referenced by an active meter but without valid registers"""
    device_id: int
    meter_ids: tuple[str, ...]
    reason: str


@dataclass(frozen=True)
class ConfigurationSummary:
    total: int
    with_registers: int
    without_registers: int
    missing_device_ids: tuple[int, ...]
    gaps: tuple[ConfigurationGap, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "with_registers": self.with_registers,
            "without_registers": self.without_registers,
            "missing_device_ids": list(self.missing_device_ids),
            "gaps": [
                {"device_id": g.device_id, "meter_ids": list(g.meter_ids), "reason": g.reason}
                for g in self.gaps
            ],
        }


@dataclass(frozen=True)
class Reading:
    """One measured value, immutable once created"""
    meter_id: str
    timestamp: datetime
    data_point: str
    value: float
    unit: str


@dataclass(frozen=True)
class CollectionError:
    """A recorded failure within a cycle"""
    meter_id: str
    operation: ErrorOperation
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    data_point: str | None = None
    address: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "meter_id": self.meter_id,
            "operation": self.operation.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "data_point": self.data_point,
            "address": self.address,
        }


@dataclass(frozen=True)
class TimeoutEvent:
    meter_id: str
    timestamp: datetime
    timeout_ms: float
    recovery_method: RecoveryMethod
    batch_size: int = 0


@dataclass
class TimeoutMetrics:
    """Timeout bookkeeping for one cycle or accumulated across cycles"""
    total_timeouts: int = 0
    timeouts_by_meter: dict[str, int] = field(default_factory=dict)
    last_timeout_time: datetime | None = None
    timeout_events: list[TimeoutEvent] = field(default_factory=list)

    def record(self, event: TimeoutEvent) -> None:
        self.total_timeouts += 1
        self.timeouts_by_meter[event.meter_id] = self.timeouts_by_meter.get(event.meter_id, 0) + 1
        self.timeout_events.append(event)
        if self.last_timeout_time is None or event.timestamp > self.last_timeout_time:
            self.last_timeout_time = event.timestamp

    def merge(self, other: "TimeoutMetrics") -> None:
        for event in other.timeout_events:
            self.record(event)

    @property
    def average_timeout_ms(self) -> float:
        if not self.timeout_events:
            return 0.0
        return sum(e.timeout_ms for e in self.timeout_events) / len(self.timeout_events)

    def copy(self) -> "TimeoutMetrics":
        return TimeoutMetrics(
            total_timeouts=self.total_timeouts,
            timeouts_by_meter=dict(self.timeouts_by_meter),
            last_timeout_time=self.last_timeout_time,
            timeout_events=list(self.timeout_events),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_timeouts": self.total_timeouts,
            "timeouts_by_meter": dict(self.timeouts_by_meter),
            "last_timeout_time": self.last_timeout_time.isoformat() if self.last_timeout_time else None,
            "average_timeout_ms": round(self.average_timeout_ms, 2),
        }


@dataclass
class CycleResult:
    """
    Outcome of one collection cycle.

    Filled in while the cycle runs so status queries can show progress;
    finalize() returns the frozen copy kept in history.
    """
    cycle_id: str
    start_time: datetime
    end_time: datetime | None = None
    meters_processed: int = 0
    readings_collected: int = 0
    errors: list[CollectionError] = field(default_factory=list)
    success: bool = True
    trigger: str = "scheduled"
    started: bool = True
    timeout_metrics: TimeoutMetrics = field(default_factory=TimeoutMetrics)
    meter_outcomes: dict[str, DeviceOutcome] = field(default_factory=dict)
    meter_readings: dict[str, int] = field(default_factory=dict)
    message: str | None = None
    finalized: bool = False

    def add_error(self, error: CollectionError) -> None:
        if self.finalized:
            raise RuntimeError(f"Cycle {self.cycle_id} is finalized")
        self.errors.append(error)

    def finalize(self, end_time: datetime | None = None) -> "CycleResult":
        return replace(
            self,
            end_time=end_time or self.end_time or utc_now(),
            errors=list(self.errors),
            timeout_metrics=self.timeout_metrics.copy(),
            meter_outcomes=dict(self.meter_outcomes),
            meter_readings=dict(self.meter_readings),
            finalized=True,
        )

    @property
    def duration_ms(self) -> float:
        end = self.end_time or utc_now()
        return (end - self.start_time).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "meters_processed": self.meters_processed,
            "readings_collected": self.readings_collected,
            "errors": [e.to_dict() for e in self.errors],
            "success": self.success,
            "trigger": self.trigger,
            "started": self.started,
            "message": self.message,
            "timeout_metrics": self.timeout_metrics.to_dict(),
            "meter_outcomes": {k: v.value for k, v in self.meter_outcomes.items()},
            "meter_readings": dict(self.meter_readings),
        }


@dataclass(frozen=True)
class OfflineMeterStatus:
    meter_id: str
    offline_since: datetime
    last_checked_at: datetime
    consecutive_failures: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "meter_id": self.meter_id,
            "offline_since": self.offline_since.isoformat(),
            "last_checked_at": self.last_checked_at.isoformat(),
            "consecutive_failures": self.consecutive_failures,
        }


@dataclass(frozen=True)
class AgentStatus:
    """Read-only view handed to status queries"""
    is_running: bool
    scheduler_state: str
    current_cycle: CycleResult | None
    last_cycle: CycleResult | None
    totals: dict[str, int]
    history: tuple[CycleResult, ...] = ()
    offline_meters: tuple[OfflineMeterStatus, ...] = ()
    timeout_metrics: TimeoutMetrics | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "scheduler_state": self.scheduler_state,
            "current_cycle": self.current_cycle.to_dict() if self.current_cycle else None,
            "last_cycle": self.last_cycle.to_dict() if self.last_cycle else None,
            "totals": dict(self.totals),
            "history": [c.to_dict() for c in self.history],
            "offline_meters": [m.to_dict() for m in self.offline_meters],
            "timeout_metrics": self.timeout_metrics.to_dict() if self.timeout_metrics else None,
        }
