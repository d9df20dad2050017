"""Collection service: manual triggers, reload failures, HTTP handlers, shutdown."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from aiohttp.test_utils import make_mocked_request

from meter_collector.common.config import CollectionSettings, CollectorConfig, StoreSettings
from meter_collector.common.exceptions import LoadError
from meter_collector.common.models import DeviceOutcome, ErrorOperation
from meter_collector.services.collection.service import CollectionService


@pytest.fixture
def config(tmp_path) -> CollectorConfig:
    return CollectorConfig(
        collection=CollectionSettings(interval_seconds=3600, auto_start_cycle=False),
        store=StoreSettings(db_path=str(tmp_path / "collector.db")),
    )


@pytest.fixture
async def service(config, seeded_database, transport):
    service = CollectionService(config, database=seeded_database, transport=transport)
    await service.start(serve_http=False)
    yield service
    await service.stop()


def _mock_store() -> AsyncMock:
    store = AsyncMock()
    store.fetch_active_meters.return_value = [
        {"meter_id": "m1", "device_id": 10, "ip": "10.0.0.1", "port": 47808},
    ]
    store.fetch_registers.return_value = [{"register_id": 1}]
    store.fetch_device_registers.return_value = [
        {"device_id": 10, "register_id": 1, "register": 1, "field_name": "kwh", "unit": "kWh"},
    ]
    return store


async def _wait_for_reads(transport):
    while transport.in_flight == 0:
        await asyncio.sleep(0.001)


class TestManualTrigger:
    async def test_cycle_collects_and_records(self, service, seeded_database):
        result = await service.trigger_collection()

        assert result.started
        assert result.trigger == "manual"
        assert result.success is True
        assert result.readings_collected == 3
        assert result.meter_outcomes == {
            "meter-a": DeviceOutcome.DONE,
            "meter-b": DeviceOutcome.SKIPPED,
        }
        assert len(seeded_database.get_readings_for_meter("meter-a")) == 3

        status = service.get_status()
        assert status.last_cycle.cycle_id == result.cycle_id
        assert status.totals["cycles"] == 1
        assert status.current_cycle is None

    async def test_trigger_while_running_is_rejected(self, service, transport):
        transport.gate = asyncio.Event()

        running = asyncio.create_task(service.trigger_collection())
        await _wait_for_reads(transport)

        assert service.get_status().current_cycle is not None
        busy = await service.trigger_collection()

        assert busy.started is False
        assert busy.success is False
        assert busy.message == "cycle in progress"

        transport.gate.set()
        first = await running

        assert first.started
        history = service.get_status().history
        assert [c.cycle_id for c in history] == [first.cycle_id]

    async def test_trigger_after_stop(self, service):
        await service.stop()

        result = await service.trigger_collection()

        assert result.started is False
        assert result.message == "collector stopping"


class TestConfigurationReload:
    async def test_each_cycle_sees_new_configuration(self, service, seeded_database):
        await service.trigger_collection()
        seeded_database.link_device_register(20, 1)

        result = await service.trigger_collection()

        assert result.meter_outcomes["meter-b"] == DeviceOutcome.DONE

    async def test_failed_reload_uses_last_snapshot_and_fails_cycle(
        self, config, database, transport
    ):
        store = _mock_store()
        service = CollectionService(config, store=store, reading_store=database, transport=transport)
        await service.start(serve_http=False)
        try:
            store.fetch_active_meters.side_effect = LoadError("connection refused", source="http")

            result = await service.trigger_collection()

            assert result.success is False
            system_errors = [e for e in result.errors if e.meter_id == "system"]
            assert [e.operation for e in system_errors] == [ErrorOperation.CONFIG]
            assert result.meter_outcomes == {"m1": DeviceOutcome.DONE}
            assert result.readings_collected == 1
        finally:
            await service.stop()

    async def test_failed_first_load_has_no_devices(self, config, database, transport):
        store = _mock_store()
        store.fetch_active_meters.side_effect = LoadError("connection refused", source="http")
        service = CollectionService(config, store=store, reading_store=database, transport=transport)
        await service.start(serve_http=False)
        try:
            result = await service.trigger_collection()

            assert result.success is False
            assert result.meters_processed == 0
            assert transport.calls == []
        finally:
            await service.stop()


class TestShutdown:
    async def test_stop_waits_for_running_cycle(self, config, seeded_database, transport):
        service = CollectionService(config, database=seeded_database, transport=transport)
        await service.start(serve_http=False)
        transport.gate = asyncio.Event()

        running = asyncio.create_task(service.trigger_collection())
        await _wait_for_reads(transport)
        stopping = asyncio.create_task(service.stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()

        transport.gate.set()
        await stopping
        result = await running

        assert result.readings_collected == 3
        assert transport.closed
        assert not service.is_running

        await service.stop()


class TestHttpHandlers:
    async def test_health(self, service):
        response = await service._health_handler(make_mocked_request("GET", "/health"))
        body = json.loads(response.text)

        assert response.status == 200
        assert body["status"] == "healthy"
        assert body["config_loaded"] is True
        assert body["scheduler"]["state"] == "scheduled"

    async def test_status(self, service):
        await service.trigger_collection()

        response = await service._status_handler(make_mocked_request("GET", "/status"))
        body = json.loads(response.text)

        assert body["is_running"] is True
        assert body["totals"]["readings"] == 3
        assert body["last_cycle"]["meter_outcomes"]["meter-b"] == "skipped"

    async def test_config_summary(self, service):
        response = await service._config_summary_handler(make_mocked_request("GET", "/config/summary"))
        body = json.loads(response.text)

        assert body["summary"]["total"] == 2
        assert body["last_error"] is None

    async def test_collect_returns_409_while_busy(self, service, transport):
        transport.gate = asyncio.Event()
        running = asyncio.create_task(
            service._collect_handler(make_mocked_request("POST", "/collect"))
        )
        await _wait_for_reads(transport)

        busy = await service._collect_handler(make_mocked_request("POST", "/collect"))

        transport.gate.set()
        done = await running

        assert busy.status == 409
        assert json.loads(busy.text)["message"] == "cycle in progress"
        assert done.status == 200
        assert json.loads(done.text)["started"] is True

    def test_routes(self, config, seeded_database, transport):
        app = CollectionService(config, database=seeded_database, transport=transport).create_app()

        routes = {(r.method, r.resource.canonical) for r in app.router.routes()}

        assert ("GET", "/health") in routes
        assert ("GET", "/status") in routes
        assert ("GET", "/config/summary") in routes
        assert ("POST", "/collect") in routes
