"""
Configuration Cache

In-memory snapshot of which meters to poll and which properties to read
from each of them.

A reload builds a complete new snapshot and swaps it in with a single
reference assignment, so readers always see either the old or the new
snapshot, never a mix. A failed reload keeps the previous snapshot.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from meter_collector.common.exceptions import LoadError
from meter_collector.common.logging_setup import get_service_logger
from meter_collector.common.models import (
    CachedDevice,
    ConfigurationGap,
    ConfigurationSummary,
    DeviceRegisterEntry,
    RegisterPoint,
    utc_now,
)
from .store import ConfigStore
from .validator import RegisterEntryValidator, ValidationReport, coerce_int

logger = get_service_logger("config.cache")

OBJECT_TYPE = "analogInput"
PROPERTY_ID = "presentValue"


@dataclass(frozen=True)
class CacheSnapshot:
    """Immutable result of one successful reload"""
    devices: tuple[CachedDevice, ...]
    gaps: tuple[ConfigurationGap, ...]
    loaded_at: datetime = field(default_factory=utc_now, compare=False)
    report: ValidationReport = field(default_factory=ValidationReport, compare=False)

    def summary(self) -> ConfigurationSummary:
        with_registers = sum(1 for d in self.devices if d.has_registers)
        return ConfigurationSummary(
            total=len(self.devices),
            with_registers=with_registers,
            without_registers=len(self.devices) - with_registers,
            missing_device_ids=tuple(sorted({g.device_id for g in self.gaps})),
            gaps=self.gaps,
        )


class ConfigCache:
    """
    Meter and register configuration cache.

    Usage:
        cache = ConfigCache(store)
        error = await cache.reload()   # None on success
        for device in cache.list_devices():
            ...
    """

    def __init__(self, store: ConfigStore, default_port: int = 47808):
        self.store = store
        self.validator = RegisterEntryValidator(default_port=default_port)
        self._snapshot: CacheSnapshot | None = None
        self._reload_lock = asyncio.Lock()
        self._last_error: LoadError | None = None

    async def reload(self) -> LoadError | None:
        """
        Re-query the store and replace the snapshot.

        Returns:
            None on success, or the LoadError (also logged) when the store
            could not be read. The previous snapshot stays in place.
        """
        async with self._reload_lock:
            try:
                meters = await self.store.fetch_active_meters()
                registers = await self.store.fetch_registers()
                entries = await self.store.fetch_device_registers()
                for name, rows in (("meters", meters), ("registers", registers), ("device_registers", entries)):
                    if not isinstance(rows, list):
                        raise LoadError(f"{name} query returned {type(rows).__name__}", source=name)
            except LoadError as e:
                return self._record_failure(e)
            except Exception as e:
                return self._record_failure(LoadError(str(e)))

            snapshot = self._build_snapshot(meters, registers, entries)
            self._snapshot = snapshot
            self._last_error = None

        summary = snapshot.summary()
        logger.info(
            f"Configuration loaded: {summary.total} meters "
            f"({summary.with_registers} with registers, {summary.without_registers} without), "
            f"{len(snapshot.report.dropped)} rows dropped",
            extra={"summary": summary.to_dict()},
        )
        return None

    def _record_failure(self, error: LoadError) -> LoadError:
        self._last_error = error
        if self._snapshot is None:
            logger.error(f"Configuration load failed, no previous snapshot: {error}")
        else:
            logger.error(
                f"Configuration reload failed, keeping snapshot from "
                f"{self._snapshot.loaded_at.isoformat()}: {error}"
            )
        return error

    def _build_snapshot(
        self,
        meter_rows: list[Any],
        register_rows: list[Any],
        entry_rows: list[Any],
    ) -> CacheSnapshot:
        report = ValidationReport()

        meters: list[dict[str, Any]] = []
        seen_meter_ids: set[str] = set()
        for index, row in enumerate(meter_rows):
            meter, reason = self.validator.validate_meter(row, index)
            if meter is None:
                report.drop("meter", index, reason)
                continue
            if meter["meter_id"] in seen_meter_ids:
                report.drop("meter", index, f"duplicate meter_id {meter['meter_id']}")
                continue
            seen_meter_ids.add(meter["meter_id"])
            meters.append(meter)
        report.meters_accepted = len(meters)

        known_device_ids = {m["device_id"] for m in meters}
        known_register_ids = set()
        for row in register_rows:
            if isinstance(row, dict):
                register_id = coerce_int(row.get("register_id"))
                if register_id is not None:
                    known_register_ids.add(register_id)

        # device_id -> ordered points, first field name wins
        points: dict[int, dict[str, RegisterPoint]] = {}
        rejected: dict[int, int] = {}
        for index, row in enumerate(entry_rows):
            entry, reason = self.validator.validate_entry(
                row, index, known_device_ids, known_register_ids
            )
            if entry is None:
                report.drop("device_register", index, reason)
                if isinstance(row, dict):
                    device_id = coerce_int(row.get("device_id"))
                    if device_id is not None:
                        rejected[device_id] = rejected.get(device_id, 0) + 1
                continue

            device_points = points.setdefault(entry.device_id, {})
            if entry.field_name in device_points:
                report.drop(
                    "device_register",
                    index,
                    f"duplicate field_name {entry.field_name} for device {entry.device_id}",
                )
                continue
            device_points[entry.field_name] = self._to_point(entry)
            report.entries_accepted += 1

        devices = tuple(
            CachedDevice.build(
                meter_id=m["meter_id"],
                device_id=m["device_id"],
                address=m["address"],
                points=list(points.get(m["device_id"], {}).items()),
                name=m["name"],
            )
            for m in meters
        )

        return CacheSnapshot(
            devices=devices,
            gaps=self._find_gaps(devices, rejected),
            report=report,
        )

    @staticmethod
    def _to_point(entry: DeviceRegisterEntry) -> RegisterPoint:
        return RegisterPoint(
            object_type=OBJECT_TYPE,
            object_instance=entry.register,
            property_id=PROPERTY_ID,
            unit=entry.unit,
        )

    @staticmethod
    def _find_gaps(
        devices: tuple[CachedDevice, ...],
        rejected: dict[int, int],
    ) -> tuple[ConfigurationGap, ...]:
        meters_by_device: dict[int, list[str]] = {}
        for device in devices:
            if not device.has_registers:
                meters_by_device.setdefault(device.device_id, []).append(device.meter_id)

        gaps = []
        for device_id in sorted(meters_by_device):
            if rejected.get(device_id):
                reason = f"all {rejected[device_id]} register entries invalid"
            else:
                reason = "no register entries"
            gaps.append(ConfigurationGap(device_id, tuple(meters_by_device[device_id]), reason))
        return tuple(gaps)

    @property
    def snapshot(self) -> CacheSnapshot | None:
        return self._snapshot

    @property
    def last_error(self) -> LoadError | None:
        return self._last_error

    @property
    def last_load_report(self) -> ValidationReport | None:
        return self._snapshot.report if self._snapshot else None

    def is_valid(self) -> bool:
        """True once a snapshot has been loaded"""
        return self._snapshot is not None

    def list_devices(self) -> tuple[CachedDevice, ...]:
        snapshot = self._snapshot
        return snapshot.devices if snapshot else ()

    def get_configuration_summary(self) -> ConfigurationSummary:
        snapshot = self._snapshot
        if snapshot is None:
            return ConfigurationSummary(0, 0, 0, ())
        return snapshot.summary()

    def get_configuration_gaps(self) -> tuple[ConfigurationGap, ...]:
        snapshot = self._snapshot
        return snapshot.gaps if snapshot else ()

    async def close(self) -> None:
        await self.store.close()
