"""Adaptive batching, sequential fallback and per-property error isolation."""

import asyncio

import pytest

from meter_collector.common.models import DeviceAddress, RecoveryMethod
from meter_collector.services.device.protocol_client import (
    DeviceProtocolClient,
    ErrorKind,
    PropertyError,
    PropertyRequest,
    PropertyValue,
)

ADDRESS = DeviceAddress("10.0.0.1", 47808)
BATCH_MS = 5000
SEQUENTIAL_MS = 3000


def _requests(count: int) -> list[PropertyRequest]:
    return [
        PropertyRequest(f"p{i}", "analogInput", i, "presentValue", "kWh")
        for i in range(1, count + 1)
    ]


@pytest.fixture
def client(transport) -> DeviceProtocolClient:
    return DeviceProtocolClient(transport, connect_timeout_ms=2000)


class TestBatchRead:
    async def test_single_batch_when_device_answers(self, client, transport):
        result = await client.read_properties(ADDRESS, _requests(5), BATCH_MS, SEQUENTIAL_MS)

        assert len(transport.calls_of("read_multiple")) == 1
        assert transport.calls_of("read_single") == []
        assert result.batch_size_used == 5
        assert [v.value for v in result.values] == [1.5, 3.0, 4.5, 6.0, 7.5]
        assert all(v.unit == "kWh" for v in result.values)

    async def test_per_property_error_in_batch_response(self, client, transport):
        transport.error_instances = {2}

        result = await client.read_properties(ADDRESS, _requests(3), BATCH_MS, SEQUENTIAL_MS)

        assert isinstance(result.results["p2"], PropertyError)
        assert result.results["p2"].kind == ErrorKind.PROTOCOL
        assert isinstance(result.results["p1"], PropertyValue)
        assert isinstance(result.results["p3"], PropertyValue)
        assert len(transport.calls_of("read_multiple")) == 1

    async def test_initial_batch_size_chunks_the_request(self, client, transport):
        await client.read_properties(
            ADDRESS, _requests(5), BATCH_MS, SEQUENTIAL_MS, initial_batch_size=2
        )

        chunks = [c[2] for c in transport.calls_of("read_multiple")]
        assert chunks == [["p1", "p2"], ["p3", "p4"]]
        assert [c[2] for c in transport.calls_of("read_single")] == [["p5"]]


class TestAdaptiveReduction:
    async def test_timeout_halves_batch_and_retries_same_properties(self, client, transport):
        transport.batch_limit = 2

        result = await client.read_properties(ADDRESS, _requests(5), BATCH_MS, SEQUENTIAL_MS)

        chunks = [c[2] for c in transport.calls_of("read_multiple")]
        assert chunks == [
            ["p1", "p2", "p3", "p4", "p5"],
            ["p1", "p2"],
            ["p3", "p4"],
        ]
        assert [c[2] for c in transport.calls_of("read_single")] == [["p5"]]
        assert result.batch_timeouts == 1
        assert result.batch_size_used == 2
        assert len(result.values) == 5

    async def test_falls_back_to_sequential_at_size_one(self, client, transport):
        transport.batch_limit = 1

        result = await client.read_properties(ADDRESS, _requests(4), BATCH_MS, SEQUENTIAL_MS)

        sizes = [len(c[2]) for c in transport.calls_of("read_multiple")]
        assert sizes == [4, 2]
        assert len(transport.calls_of("read_single")) == 4
        assert result.sequential_reads == 4
        assert result.batch_timeouts == 2
        assert [e.recovery_method for e in result.timeout_events] == [
            RecoveryMethod.BATCH_REDUCED,
            RecoveryMethod.SEQUENTIAL,
        ]
        assert len(result.values) == 4

    async def test_protocol_rejection_also_reduces(self, client, transport):
        transport.batch_protocol_error = True

        result = await client.read_properties(ADDRESS, _requests(3), BATCH_MS, SEQUENTIAL_MS)

        assert [len(c[2]) for c in transport.calls_of("read_multiple")] == [3]
        assert len(transport.calls_of("read_single")) == 3
        assert result.batch_timeouts == 0
        assert len(result.values) == 3

    async def test_each_call_gets_its_own_timeout(self, client, transport):
        transport.batch_limit = 1

        await client.read_properties(ADDRESS, _requests(4), BATCH_MS, SEQUENTIAL_MS)

        assert {c[3] for c in transport.calls_of("read_multiple")} == {BATCH_MS}
        assert {c[3] for c in transport.calls_of("read_single")} == {SEQUENTIAL_MS}
        assert {c[3] for c in transport.calls_of("connect")} == {2000}


class TestSequentialRead:
    async def test_batching_disabled_reads_one_by_one(self, client, transport):
        result = await client.read_properties(
            ADDRESS, _requests(3), BATCH_MS, SEQUENTIAL_MS, batching=False
        )

        assert transport.calls_of("read_multiple") == []
        assert len(transport.calls_of("read_single")) == 3
        assert result.batch_size_used == 1

    async def test_one_failing_property_does_not_abort_siblings(self, client, transport):
        transport.timeout_instances = {2}
        transport.error_instances = {3}

        result = await client.read_properties(
            ADDRESS, _requests(4), BATCH_MS, SEQUENTIAL_MS, batching=False
        )

        assert result.results["p2"].kind == ErrorKind.TIMEOUT
        assert result.results["p2"].timed_out
        assert result.results["p3"].kind == ErrorKind.PROTOCOL
        assert result.results["p1"].value == 1.5
        assert result.results["p4"].value == 6.0

    async def test_non_numeric_value_is_a_read_error(self, client, transport):
        transport.value_for = lambda instance: "n/a"

        result = await client.read_properties(ADDRESS, _requests(1), BATCH_MS, SEQUENTIAL_MS)

        assert result.results["p1"].kind == ErrorKind.READ

    async def test_slow_transport_is_cut_by_timeout(self, client, transport):
        transport.delay = 0.5

        result = await client.read_properties(
            ADDRESS, _requests(1), BATCH_MS, 50, batching=False
        )

        assert result.results["p1"].kind == ErrorKind.TIMEOUT


class TestConnectFailure:
    async def test_every_property_gets_a_connect_error(self, client, transport):
        transport.unreachable = {ADDRESS.ip}

        result = await client.read_properties(ADDRESS, _requests(3), BATCH_MS, SEQUENTIAL_MS)

        assert result.connect_error is not None
        assert set(result.results) == {"p1", "p2", "p3"}
        assert all(r.kind == ErrorKind.CONNECT for r in result.results.values())
        assert transport.calls_of("read_multiple") == []
        assert transport.calls_of("read_single") == []


class TestResultShape:
    @pytest.mark.parametrize("count, batch_limit, errors", [
        (1, None, set()),
        (6, 3, {2}),
        (7, 1, {1, 7}),
        (9, 4, set()),
    ])
    async def test_exactly_one_outcome_per_property(self, client, transport, count, batch_limit, errors):
        transport.batch_limit = batch_limit
        transport.error_instances = errors

        result = await client.read_properties(ADDRESS, _requests(count), BATCH_MS, SEQUENTIAL_MS)

        assert list(result.results) == [f"p{i}" for i in range(1, count + 1)]
        assert len(result.values) + len(result.errors) == count

    async def test_empty_request(self, client, transport):
        result = await client.read_properties(ADDRESS, [], BATCH_MS, SEQUENTIAL_MS)

        assert result.results == {}
        assert transport.calls == []

    def test_connect_timeout_must_be_positive(self, transport):
        with pytest.raises(ValueError):
            DeviceProtocolClient(transport, connect_timeout_ms=0)

    async def test_close_closes_transport(self, client, transport):
        await client.close()
        assert transport.closed
