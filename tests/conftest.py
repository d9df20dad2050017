"""Shared fixtures: in-memory BACnet transport, temporary database, device factory."""

import asyncio
import logging
from typing import Any, Sequence

import pytest

from meter_collector.common.exceptions import CommunicationError, ProtocolError, ReadTimeoutError
from meter_collector.common.models import CachedDevice, DeviceAddress, RegisterPoint
from meter_collector.services.device.protocol_client import PropertyRequest
from meter_collector.storage.local_db import LocalDatabase


class FakeTransport:
    """
    Scriptable PropertyTransport.

    - unreachable: IPs whose connect fails
    - batch_limit: read_multiple with more properties than this times out
    - batch_protocol_error: read_multiple always rejected
    - error_instances: object instances answering with a property error
    - timeout_instances: object instances that time out on single reads
    - delay: seconds each read takes
    """

    def __init__(self):
        self.unreachable: set[str] = set()
        self.batch_limit: int | None = None
        self.batch_protocol_error = False
        self.error_instances: set[int] = set()
        self.timeout_instances: set[int] = set()
        self.delay = 0.0
        self.calls: list[tuple[str, str, list[str], float]] = []
        self.closed = False
        self.in_flight = 0
        self.max_in_flight = 0
        self.gate: asyncio.Event | None = None

    @staticmethod
    def value_for(instance: int) -> float:
        return instance * 1.5

    async def _enter(self):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

    async def connect(self, address: DeviceAddress, timeout_ms: float) -> None:
        self.calls.append(("connect", str(address), [], timeout_ms))
        if address.ip in self.unreachable:
            raise CommunicationError("device not responding", host=address.ip, port=address.port)

    async def read_multiple(
        self,
        address: DeviceAddress,
        requests: Sequence[PropertyRequest],
        timeout_ms: float,
    ) -> dict[str, Any]:
        self.calls.append(("read_multiple", str(address), [r.data_point for r in requests], timeout_ms))
        await self._enter()
        if self.batch_protocol_error:
            raise ProtocolError("segmentation not supported", address=str(address))
        if self.batch_limit is not None and len(requests) > self.batch_limit:
            raise ReadTimeoutError("no response", timeout_ms=timeout_ms, address=str(address))

        values: dict[str, Any] = {}
        for request in requests:
            if request.object_instance in self.error_instances:
                values[request.data_point] = ProtocolError("unknown object")
            else:
                values[request.data_point] = self.value_for(request.object_instance)
        return values

    async def read_single(self, address: DeviceAddress, request: PropertyRequest, timeout_ms: float) -> Any:
        self.calls.append(("read_single", str(address), [request.data_point], timeout_ms))
        await self._enter()
        if request.object_instance in self.timeout_instances:
            raise ReadTimeoutError("no response", timeout_ms=timeout_ms, address=str(address))
        if request.object_instance in self.error_instances:
            raise ProtocolError("unknown object", address=str(address))
        return self.value_for(request.object_instance)

    async def close(self) -> None:
        self.closed = True

    def calls_of(self, method: str) -> list[tuple[str, str, list[str], float]]:
        return [c for c in self.calls if c[0] == method]


@pytest.fixture(autouse=True)
def collector_logger():
    """Undo setup_logging() so caplog sees component records"""
    logger = logging.getLogger("meter_collector")
    logger.handlers.clear()
    logger.propagate = True
    yield logger
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def database(tmp_path) -> LocalDatabase:
    return LocalDatabase(tmp_path / "collector.db")


@pytest.fixture
def make_device():
    """Factory: make_device("m1", 10, [("kwh", 1, "kWh"), ...], ip="10.0.0.1")"""

    def _make(
        meter_id: str,
        device_id: int,
        registers: list[tuple[str, int, str]] = (),
        ip: str = "10.0.0.1",
        port: int = 47808,
    ) -> CachedDevice:
        points = [
            (field_name, RegisterPoint("analogInput", register, "presentValue", unit))
            for field_name, register, unit in registers
        ]
        return CachedDevice.build(meter_id, device_id, DeviceAddress(ip, port), points, name=meter_id)

    return _make


@pytest.fixture
def seeded_database(database: LocalDatabase) -> LocalDatabase:
    """Two active meters (device 10 with three registers, device 20 with none) and one inactive meter"""
    database.upsert_register(1, 1, "kwh", "kWh")
    database.upsert_register(2, 2, "kw", "kW")
    database.upsert_register(3, 3, "voltage", "V")
    database.upsert_meter("meter-a", 10, "10.0.0.1", 47808, name="A")
    database.upsert_meter("meter-b", 20, "10.0.0.2", None, name="B")
    database.upsert_meter("meter-off", 30, "10.0.0.3", 47808, name="Off", active=False)
    database.link_device_register(10, 1)
    database.link_device_register(10, 2)
    database.link_device_register(10, 3)
    database.link_device_register(30, 1)
    return database
