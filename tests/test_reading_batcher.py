"""Per-device atomic commit of readings."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

from meter_collector.common.exceptions import WriteError
from meter_collector.common.models import Reading
from meter_collector.services.collection.reading_batcher import ReadingBatcher

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _reading(meter_id: str, data_point: str, value: float) -> Reading:
    return Reading(meter_id=meter_id, timestamp=NOW, data_point=data_point, value=value, unit="kWh")


class TestCommit:
    async def test_commits_to_database(self, database):
        batcher = ReadingBatcher(database)

        result = await batcher.commit("m1", [_reading("m1", "kwh", 1.0), _reading("m1", "kw", 2.0)])

        assert result.ok
        assert result.count == 2
        assert len(database.get_readings_for_meter("m1")) == 2

    async def test_empty_commit_skips_store(self):
        store = MagicMock()

        result = await ReadingBatcher(store).commit("m1", [])

        assert result.ok
        assert result.count == 0
        store.insert_readings.assert_not_called()

    async def test_foreign_reading_rejects_whole_batch(self, database):
        batcher = ReadingBatcher(database)

        result = await batcher.commit("m1", [_reading("m1", "kwh", 1.0), _reading("m2", "kwh", 2.0)])

        assert not result.ok
        assert isinstance(result.error, WriteError)
        assert database.get_readings_for_meter("m1") == []

    async def test_store_write_error_is_returned(self):
        store = MagicMock()
        error = WriteError("database is locked", meter_id="m1", count=1)
        store.insert_readings.side_effect = error

        result = await ReadingBatcher(store).commit("m1", [_reading("m1", "kwh", 1.0)])

        assert result.error is error
        assert result.count == 0

    async def test_unexpected_store_error_is_wrapped(self):
        store = MagicMock()
        store.insert_readings.side_effect = OSError("disk full")

        result = await ReadingBatcher(store).commit("m1", [_reading("m1", "kwh", 1.0)])

        assert isinstance(result.error, WriteError)
        assert "disk full" in str(result.error)
