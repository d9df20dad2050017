"""
Collection Cycle Manager

Runs one collection cycle over a device snapshot:

    per device:  skipped  (no registers)          -> config error
                 failed   (connect error)         -> connect error
                 done     (values and/or errors)  -> readings committed,
                                                     read errors recorded

Devices run concurrently on a bounded pool; each device's own reads are
sequential. Device and property failures never end the cycle: they are
recorded on the CycleResult, which is filled in live so status queries
can follow progress.
"""

import asyncio
import uuid
from typing import Sequence

from meter_collector.common.logging_setup import get_service_logger, log_cycle_summary
from meter_collector.common.models import (
    CachedDevice,
    CollectionError,
    CycleResult,
    DeviceOutcome,
    ErrorOperation,
    Reading,
    utc_now,
)
from meter_collector.services.device.batch_size import BatchSizeManager
from meter_collector.services.device.protocol_client import (
    DeviceProtocolClient,
    PropertyRequest,
)
from .reading_batcher import ReadingBatcher

logger = get_service_logger("collection.cycle")


def new_cycle_result(trigger: str = "scheduled") -> CycleResult:
    return CycleResult(
        cycle_id=uuid.uuid4().hex[:12],
        start_time=utc_now(),
        trigger=trigger,
    )


class CollectionCycleManager:
    """
    Executes collection cycles.

    Args:
        max_concurrent_devices: Devices polled at the same time
        batch_size_manager: Per-meter batch size memory (optional)
        enable_batching: False reads every property individually
        stop_event: Once set, devices not yet started are left alone
    """

    def __init__(
        self,
        max_concurrent_devices: int = 4,
        batch_size_manager: BatchSizeManager | None = None,
        enable_batching: bool = True,
        stop_event: asyncio.Event | None = None,
    ):
        if max_concurrent_devices < 1:
            raise ValueError("max_concurrent_devices must be at least 1")
        self.max_concurrent_devices = max_concurrent_devices
        self.batch_size_manager = batch_size_manager
        self.enable_batching = enable_batching
        self.stop_event = stop_event

    async def execute_cycle(
        self,
        devices: Sequence[CachedDevice],
        protocol_client: DeviceProtocolClient,
        batcher: ReadingBatcher,
        batch_timeout_ms: float,
        sequential_timeout_ms: float,
        *,
        result: CycleResult | None = None,
        trigger: str = "scheduled",
    ) -> CycleResult:
        """
        Poll every device once and commit its readings.

        Args:
            devices: Snapshot to poll (not re-queried during the cycle)
            protocol_client: Reader for device properties
            batcher: Per-device reading commit
            batch_timeout_ms: Bound on each read-multiple call
            sequential_timeout_ms: Bound on each single-property read
            result: In-flight result to fill (created when omitted)
            trigger: "scheduled" or "manual"

        Returns:
            The finalized CycleResult
        """
        if result is None:
            result = new_cycle_result(trigger)

        logger.info(
            f"Starting collection cycle {result.cycle_id} ({result.trigger}): {len(devices)} meters",
            extra={"cycle_id": result.cycle_id, "meter_count": len(devices)},
        )

        semaphore = asyncio.Semaphore(self.max_concurrent_devices)
        await asyncio.gather(*(
            self._run_device(
                semaphore, device, protocol_client, batcher,
                batch_timeout_ms, sequential_timeout_ms, result,
            )
            for device in devices
        ))

        not_started = len(devices) - result.meters_processed
        if not_started and self.stop_event is not None and self.stop_event.is_set():
            logger.info(f"Cycle {result.cycle_id} stopped early: {not_started} meters not polled")

        result.end_time = utc_now()
        final = result.finalize()
        log_cycle_summary(
            logger,
            final.cycle_id,
            final.meters_processed,
            final.readings_collected,
            len(final.errors),
            final.duration_ms,
        )
        return final

    async def _run_device(
        self,
        semaphore: asyncio.Semaphore,
        device: CachedDevice,
        client: DeviceProtocolClient,
        batcher: ReadingBatcher,
        batch_timeout_ms: float,
        sequential_timeout_ms: float,
        result: CycleResult,
    ) -> None:
        async with semaphore:
            if self.stop_event is not None and self.stop_event.is_set():
                return

            try:
                outcome = await self._process_device(
                    device, client, batcher, batch_timeout_ms, sequential_timeout_ms, result
                )
            except Exception as e:
                logger.error(
                    f"Error processing meter {device.meter_id}: {e}",
                    exc_info=True,
                    extra={"meter_id": device.meter_id},
                )
                result.add_error(CollectionError(
                    meter_id=device.meter_id,
                    operation=ErrorOperation.READ,
                    message=str(e) or type(e).__name__,
                    address=str(device.address),
                ))
                outcome = DeviceOutcome.FAILED

            result.meter_outcomes[device.meter_id] = outcome
            result.meters_processed += 1

    async def _process_device(
        self,
        device: CachedDevice,
        client: DeviceProtocolClient,
        batcher: ReadingBatcher,
        batch_timeout_ms: float,
        sequential_timeout_ms: float,
        result: CycleResult,
    ) -> DeviceOutcome:
        address = str(device.address)

        if not device.has_registers:
            logger.warning(
                f"No registers configured for device {device.device_id} "
                f"(meter {device.meter_id}), skipping meter",
                extra={"meter_id": device.meter_id, "device_id": device.device_id},
            )
            result.add_error(CollectionError(
                meter_id=device.meter_id,
                operation=ErrorOperation.CONFIG,
                message=f"No registers configured for device {device.device_id}",
                address=address,
            ))
            return DeviceOutcome.SKIPPED

        requests = [
            PropertyRequest.from_point(data_point, point)
            for data_point, point in device.register_map.items()
        ]

        initial_batch_size = None
        if self.enable_batching and self.batch_size_manager is not None:
            initial_batch_size = self.batch_size_manager.get_batch_size(
                device.meter_id, len(requests)
            )

        logger.debug(
            f"Reading {len(requests)} properties from meter {device.meter_id} at {address}",
            extra={"meter_id": device.meter_id, "address": address},
        )
        read = await client.read_properties(
            device.address,
            requests,
            batch_timeout_ms,
            sequential_timeout_ms,
            batching=self.enable_batching,
            initial_batch_size=initial_batch_size,
            meter_id=device.meter_id,
        )

        for event in read.timeout_events:
            result.timeout_metrics.record(event)

        if read.connect_error is not None:
            result.add_error(CollectionError(
                meter_id=device.meter_id,
                operation=ErrorOperation.CONNECT,
                message=read.connect_error,
                address=address,
            ))
            return DeviceOutcome.FAILED

        self._update_batch_size(device.meter_id, read.batch_timeouts, read.batch_size_used)

        readings = [
            Reading(
                meter_id=device.meter_id,
                timestamp=value.timestamp,
                data_point=value.data_point,
                value=value.value,
                unit=value.unit,
            )
            for value in read.values
        ]

        for error in read.errors:
            result.add_error(CollectionError(
                meter_id=device.meter_id,
                operation=ErrorOperation.READ,
                message=f"{error.kind.value}: {error.message}",
                data_point=error.data_point,
                address=address,
            ))

        if readings:
            commit = await batcher.commit(device.meter_id, readings)
            if commit.ok:
                result.readings_collected += commit.count
                result.meter_readings[device.meter_id] = commit.count
                logger.info(
                    f"Committed {commit.count} readings for meter {device.meter_id}",
                    extra={"meter_id": device.meter_id, "count": commit.count},
                )
            else:
                result.add_error(CollectionError(
                    meter_id=device.meter_id,
                    operation=ErrorOperation.WRITE,
                    message=str(commit.error),
                    address=address,
                ))

        return DeviceOutcome.DONE

    def _update_batch_size(self, meter_id: str, batch_timeouts: int, batch_size_used: int) -> None:
        if self.batch_size_manager is None or not self.enable_batching:
            return
        for _ in range(batch_timeouts):
            self.batch_size_manager.record_timeout(meter_id)
        if batch_size_used > 0:
            self.batch_size_manager.record_success(meter_id, batch_size_used)
