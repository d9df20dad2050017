"""
Configuration Validator

Validates raw meter and device-register rows from the configuration store.

Each row is checked on its own: a bad row is dropped with a reason and
never blocks the rows around it.
"""

from dataclasses import dataclass, field
from typing import Any

from meter_collector.common.logging_setup import get_service_logger
from meter_collector.common.models import DeviceAddress, DeviceRegisterEntry

logger = get_service_logger("config.validator")

REQUIRED_ENTRY_FIELDS = ("device_id", "register_id", "field_name", "unit")
REQUIRED_METER_FIELDS = ("meter_id", "device_id", "ip")


@dataclass
class DroppedRow:
    kind: str  # "meter" or "device_register"
    index: int
    reason: str


@dataclass
class ValidationReport:
    """What one reload accepted and dropped"""
    meters_accepted: int = 0
    entries_accepted: int = 0
    dropped: list[DroppedRow] = field(default_factory=list)

    def drop(self, kind: str, index: int, reason: str) -> None:
        self.dropped.append(DroppedRow(kind, index, reason))
        logger.warning(
            f"Dropped {kind} row {index}: {reason}",
            extra={"row_kind": kind, "row_index": index, "reason": reason},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "meters_accepted": self.meters_accepted,
            "entries_accepted": self.entries_accepted,
            "dropped": [
                {"kind": d.kind, "index": d.index, "reason": d.reason} for d in self.dropped
            ],
        }


def coerce_int(value: Any) -> int | None:
    """Accept ints and numeric strings; reject bools, floats with fractions and junk"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


class RegisterEntryValidator:
    """Validates meters and device-register entries"""

    def __init__(self, default_port: int = 47808):
        self.default_port = default_port

    def validate_meter(self, row: Any, index: int) -> tuple[dict[str, Any] | None, str | None]:
        """
        Validate one meter row.

        Returns:
            Tuple of (normalized meter dict, None) or (None, reason)
        """
        if not isinstance(row, dict):
            return None, "row is not a mapping"

        for name in REQUIRED_METER_FIELDS:
            if row.get(name) in (None, ""):
                return None, f"missing {name}"

        device_id = coerce_int(row["device_id"])
        if device_id is None:
            return None, f"device_id is not numeric: {row['device_id']!r}"

        port_value = row.get("port")
        if port_value in (None, ""):
            port = self.default_port
        else:
            port = coerce_int(port_value)
            if port is None or port < 1 or port > 65535:
                return None, f"invalid port: {port_value!r}"

        return {
            "meter_id": str(row["meter_id"]),
            "name": str(row.get("name") or ""),
            "device_id": device_id,
            "address": DeviceAddress(str(row["ip"]).strip(), port),
        }, None

    def validate_entry(
        self,
        row: Any,
        index: int,
        known_device_ids: set[int],
        known_register_ids: set[int],
    ) -> tuple[DeviceRegisterEntry | None, str | None]:
        """
        Validate one device-register row.

        Returns:
            Tuple of (entry, None) or (None, reason)
        """
        if not isinstance(row, dict):
            return None, "row is not a mapping"

        for name in REQUIRED_ENTRY_FIELDS:
            if row.get(name) is None:
                return None, f"missing {name}"

        device_id = coerce_int(row["device_id"])
        if device_id is None:
            return None, f"device_id is not numeric: {row['device_id']!r}"

        register_id = coerce_int(row["register_id"])
        if register_id is None:
            return None, f"register_id is not numeric: {row['register_id']!r}"

        register = coerce_int(row.get("register"))
        if register is None:
            return None, f"register is not numeric: {row.get('register')!r}"
        if register < 0:
            return None, f"register is negative: {register}"

        field_name = str(row["field_name"]).strip()
        if not field_name:
            return None, "empty field_name"

        if device_id not in known_device_ids:
            return None, f"device_id {device_id} not referenced by any active meter"
        if register_id not in known_register_ids:
            return None, f"register_id {register_id} not found"

        return DeviceRegisterEntry(
            device_id=device_id,
            register_id=register_id,
            register=register,
            field_name=field_name,
            unit=str(row["unit"]),
        ), None
