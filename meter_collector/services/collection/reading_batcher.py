"""
Reading Batcher

Commits one device's readings per cycle as a single atomic write.
"""

import asyncio
from dataclasses import dataclass
from typing import Protocol, Sequence

from meter_collector.common.exceptions import WriteError
from meter_collector.common.logging_setup import get_service_logger
from meter_collector.common.models import Reading

logger = get_service_logger("collection.batcher")


class ReadingStore(Protocol):
    def insert_readings(self, readings: list[Reading]) -> int:
        """Persist all readings or none; raises WriteError on failure"""
        ...


@dataclass(frozen=True)
class CommitResult:
    meter_id: str
    count: int = 0
    error: WriteError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ReadingBatcher:
    """
    Per-device commit of readings.

    The store call runs in a worker thread; nothing is retried here, a
    failed commit is reported back to the caller as a CommitResult.
    """

    def __init__(self, store: ReadingStore):
        self.store = store

    async def commit(self, meter_id: str, readings: Sequence[Reading]) -> CommitResult:
        if not readings:
            return CommitResult(meter_id, 0)

        foreign = {r.meter_id for r in readings if r.meter_id != meter_id}
        if foreign:
            error = WriteError(
                f"readings for {sorted(foreign)} passed with meter {meter_id}",
                meter_id=meter_id,
                count=len(readings),
            )
            logger.error(str(error), extra={"meter_id": meter_id})
            return CommitResult(meter_id, 0, error)

        try:
            count = await asyncio.to_thread(self.store.insert_readings, list(readings))
        except WriteError as e:
            return CommitResult(meter_id, 0, e)
        except Exception as e:
            logger.error(f"Commit failed for meter {meter_id}: {e}", exc_info=True)
            return CommitResult(
                meter_id, 0, WriteError(str(e), meter_id=meter_id, count=len(readings))
            )

        return CommitResult(meter_id, count)
