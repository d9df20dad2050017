"""
Device Protocol Client

Reads a set of named properties from one device with adaptive batching
and a sequential fallback.

Read strategy:
1. Connect once; on failure every property gets a connect error
2. Read-multiple in chunks of the current batch size (batch timeout)
3. A wholesale batch failure halves the batch size and retries the same
   remaining properties
4. At batch size 1 the rest is read one property at a time
   (sequential timeout); one property failing never aborts its siblings

The client holds no timeout constants of its own: batch and sequential
timeouts are per-call arguments, the connect timeout a constructor input.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence

from meter_collector.common.exceptions import DeviceError, ReadTimeoutError
from meter_collector.common.logging_setup import get_service_logger, log_property_read
from meter_collector.common.models import (
    DeviceAddress,
    RecoveryMethod,
    RegisterPoint,
    TimeoutEvent,
    utc_now,
)

logger = get_service_logger("device.client")


class ErrorKind(str, Enum):
    CONNECT = "connect"
    TIMEOUT = "timeout"
    PROTOCOL = "protocol"
    READ = "read"


@dataclass(frozen=True)
class PropertyRequest:
    """One property to read, keyed by its data point name"""
    data_point: str
    object_type: str
    object_instance: int
    property_id: str = "presentValue"
    unit: str = ""

    @classmethod
    def from_point(cls, data_point: str, point: RegisterPoint) -> "PropertyRequest":
        return cls(
            data_point=data_point,
            object_type=point.object_type,
            object_instance=point.object_instance,
            property_id=point.property_id,
            unit=point.unit,
        )

    @property
    def object_ref(self) -> str:
        return f"{self.object_type} {self.object_instance} {self.property_id}"


@dataclass(frozen=True)
class PropertyValue:
    data_point: str
    value: float
    unit: str
    timestamp: datetime


@dataclass(frozen=True)
class PropertyError:
    data_point: str
    kind: ErrorKind
    message: str

    @property
    def timed_out(self) -> bool:
        return self.kind == ErrorKind.TIMEOUT


PropertyOutcome = PropertyValue | PropertyError


@dataclass
class ReadPropertiesResult:
    """Exactly one outcome per requested data point"""
    results: dict[str, PropertyOutcome] = field(default_factory=dict)
    connect_error: str | None = None
    batch_size_used: int = 0
    batch_timeouts: int = 0
    sequential_reads: int = 0
    timeout_events: list[TimeoutEvent] = field(default_factory=list)

    @property
    def values(self) -> list[PropertyValue]:
        return [r for r in self.results.values() if isinstance(r, PropertyValue)]

    @property
    def errors(self) -> list[PropertyError]:
        return [r for r in self.results.values() if isinstance(r, PropertyError)]


class PropertyTransport(Protocol):
    """
    Wire access to devices.

    read_multiple raises on wholesale failure (timeout, reject, abort);
    otherwise it returns, per requested data point, either the raw value
    or an Exception describing that property's error.
    """

    async def connect(self, address: DeviceAddress, timeout_ms: float) -> None: ...

    async def read_multiple(
        self,
        address: DeviceAddress,
        requests: Sequence[PropertyRequest],
        timeout_ms: float,
    ) -> Mapping[str, Any]: ...

    async def read_single(
        self,
        address: DeviceAddress,
        request: PropertyRequest,
        timeout_ms: float,
    ) -> Any: ...

    async def close(self) -> None: ...


def to_float(raw: Any) -> float:
    """Convert a raw property value to float"""
    if isinstance(raw, bool):
        return 1.0 if raw else 0.0
    if isinstance(raw, str) and raw.strip().lower() in ("active", "inactive"):
        return 1.0 if raw.strip().lower() == "active" else 0.0
    value = float(raw)
    if value != value:  # NaN
        raise ValueError("value is NaN")
    return value


def _is_timeout(exc: BaseException) -> bool:
    return isinstance(exc, (asyncio.TimeoutError, ReadTimeoutError))


class DeviceProtocolClient:
    """
    Adaptive property reader over a PropertyTransport.

    Usage:
        client = DeviceProtocolClient(transport, connect_timeout_ms=2000)
        result = await client.read_properties(address, requests, 5000, 3000)
    """

    def __init__(self, transport: PropertyTransport, connect_timeout_ms: float = 2000):
        if connect_timeout_ms <= 0:
            raise ValueError("connect_timeout_ms must be positive")
        self.transport = transport
        self.connect_timeout_ms = connect_timeout_ms

    async def read_properties(
        self,
        address: DeviceAddress,
        properties: Sequence[PropertyRequest],
        batch_timeout_ms: float,
        sequential_timeout_ms: float,
        *,
        batching: bool = True,
        initial_batch_size: int | None = None,
        meter_id: str = "",
    ) -> ReadPropertiesResult:
        """
        Read every requested property from one device.

        Args:
            address: Device address
            properties: Properties to read, in order
            batch_timeout_ms: Bound on each read-multiple call
            sequential_timeout_ms: Bound on each single-property read
            batching: False reads every property individually
            initial_batch_size: Starting chunk size (default: all properties)
            meter_id: Label for logs and timeout events

        Returns:
            ReadPropertiesResult with one outcome per data point
        """
        result = ReadPropertiesResult()
        if not properties:
            return result

        label = meter_id or str(address)

        if not await self._connect(address, properties, result, label):
            return result

        pending = list(properties)
        if batching:
            size = initial_batch_size or len(pending)
        else:
            size = 1
        size = max(1, min(size, len(pending)))

        try:
            while pending and min(size, len(pending)) > 1:
                chunk = pending[:size]
                try:
                    raw_values = await asyncio.wait_for(
                        self.transport.read_multiple(address, chunk, batch_timeout_ms),
                        timeout=batch_timeout_ms / 1000,
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    size = max(1, len(chunk) // 2)
                    if _is_timeout(e):
                        result.batch_timeouts += 1
                        self._record_timeout(
                            result, label, batch_timeout_ms,
                            RecoveryMethod.BATCH_REDUCED if size > 1 else RecoveryMethod.SEQUENTIAL,
                            len(chunk),
                        )
                    logger.warning(
                        f"Batch read of {len(chunk)} properties failed on {label} "
                        f"({'timeout' if _is_timeout(e) else e}), retrying with batch size {size}",
                        extra={"meter_id": meter_id, "address": str(address), "batch_size": len(chunk)},
                    )
                    continue

                self._apply_batch(chunk, raw_values, result, label)
                result.batch_size_used = max(result.batch_size_used, len(chunk))
                pending = pending[len(chunk):]

            for request in pending:
                result.sequential_reads += 1
                result.results[request.data_point] = await self._read_one(
                    address, request, sequential_timeout_ms, result, label
                )
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            self._fill_missing(properties, result, ErrorKind.READ, "read cancelled")

        if result.batch_size_used == 0 and result.sequential_reads:
            result.batch_size_used = 1
        return result

    async def _connect(
        self,
        address: DeviceAddress,
        properties: Sequence[PropertyRequest],
        result: ReadPropertiesResult,
        label: str,
    ) -> bool:
        try:
            await asyncio.wait_for(
                self.transport.connect(address, self.connect_timeout_ms),
                timeout=self.connect_timeout_ms / 1000,
            )
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if _is_timeout(e):
                message = f"connect to {address} timed out after {self.connect_timeout_ms:.0f}ms"
                self._record_timeout(
                    result, label, self.connect_timeout_ms, RecoveryMethod.OFFLINE, 0
                )
            else:
                message = f"connect to {address} failed: {e}"

        result.connect_error = message
        self._fill_missing(properties, result, ErrorKind.CONNECT, message)
        logger.warning(message, extra={"meter_id": label, "address": str(address)})
        return False

    def _apply_batch(
        self,
        chunk: Sequence[PropertyRequest],
        raw_values: Mapping[str, Any],
        result: ReadPropertiesResult,
        label: str,
    ) -> None:
        completed_at = utc_now()
        for request in chunk:
            if request.data_point not in raw_values:
                outcome: PropertyOutcome = PropertyError(
                    request.data_point, ErrorKind.READ, "missing from read-multiple response"
                )
            else:
                outcome = self._to_outcome(request, raw_values[request.data_point], completed_at)
            result.results[request.data_point] = outcome
            self._log_outcome(label, outcome)

    async def _read_one(
        self,
        address: DeviceAddress,
        request: PropertyRequest,
        timeout_ms: float,
        result: ReadPropertiesResult,
        label: str,
    ) -> PropertyOutcome:
        try:
            raw = await asyncio.wait_for(
                self.transport.read_single(address, request, timeout_ms),
                timeout=timeout_ms / 1000,
            )
            outcome = self._to_outcome(request, raw, utc_now())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if _is_timeout(e):
                self._record_timeout(result, label, timeout_ms, RecoveryMethod.SEQUENTIAL, 1)
                outcome = PropertyError(
                    request.data_point, ErrorKind.TIMEOUT, f"read timed out after {timeout_ms:.0f}ms"
                )
            elif isinstance(e, DeviceError):
                outcome = PropertyError(request.data_point, ErrorKind.PROTOCOL, str(e))
            else:
                outcome = PropertyError(request.data_point, ErrorKind.READ, str(e))

        self._log_outcome(label, outcome)
        return outcome

    @staticmethod
    def _to_outcome(request: PropertyRequest, raw: Any, timestamp: datetime) -> PropertyOutcome:
        if isinstance(raw, BaseException):
            kind = ErrorKind.TIMEOUT if _is_timeout(raw) else ErrorKind.PROTOCOL
            return PropertyError(request.data_point, kind, str(raw) or type(raw).__name__)
        try:
            value = to_float(raw)
        except (TypeError, ValueError):
            return PropertyError(request.data_point, ErrorKind.READ, f"non-numeric value: {raw!r}")
        return PropertyValue(request.data_point, value, request.unit, timestamp)

    @staticmethod
    def _fill_missing(
        properties: Sequence[PropertyRequest],
        result: ReadPropertiesResult,
        kind: ErrorKind,
        message: str,
    ) -> None:
        for request in properties:
            if request.data_point not in result.results:
                result.results[request.data_point] = PropertyError(request.data_point, kind, message)

    @staticmethod
    def _record_timeout(
        result: ReadPropertiesResult,
        label: str,
        timeout_ms: float,
        recovery: RecoveryMethod,
        batch_size: int,
    ) -> None:
        result.timeout_events.append(
            TimeoutEvent(
                meter_id=label,
                timestamp=utc_now(),
                timeout_ms=timeout_ms,
                recovery_method=recovery,
                batch_size=batch_size,
            )
        )

    @staticmethod
    def _log_outcome(label: str, outcome: PropertyOutcome) -> None:
        if isinstance(outcome, PropertyValue):
            log_property_read(logger, label, outcome.data_point, outcome.value)
        else:
            log_property_read(
                logger, label, outcome.data_point, None,
                success=False, error=f"{outcome.kind.value}: {outcome.message}",
            )

    async def close(self) -> None:
        await self.transport.close()
