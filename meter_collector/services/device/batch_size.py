"""
Batch Size Manager

Remembers, per meter, how many properties can be requested in one
read-multiple call. A timeout shrinks the size by the reduction factor
(never below min_batch_size); the size is kept across cycles so a slow
meter does not time out on its first batch every cycle.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime

from meter_collector.common.logging_setup import get_service_logger
from meter_collector.common.models import utc_now

logger = get_service_logger("device.batch_size")


@dataclass
class MeterBatchState:
    meter_id: str
    current_batch_size: int
    consecutive_successes: int = 0
    consecutive_timeouts: int = 0
    last_successful_batch_size: int | None = None
    reduced: bool = False
    last_updated: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "meter_id": self.meter_id,
            "current_batch_size": self.current_batch_size,
            "consecutive_successes": self.consecutive_successes,
            "consecutive_timeouts": self.consecutive_timeouts,
            "last_successful_batch_size": self.last_successful_batch_size,
            "reduced": self.reduced,
            "last_updated": self.last_updated.isoformat(),
        }


class BatchSizeManager:
    """Per-meter adaptive batch size memory"""

    def __init__(
        self,
        initial_batch_size: int | str = "all",
        min_batch_size: int = 1,
        reduction_factor: float = 0.5,
    ):
        if min_batch_size < 1:
            raise ValueError("min_batch_size must be at least 1")
        if not 0 < reduction_factor < 1:
            raise ValueError("reduction_factor must be between 0 and 1")
        if initial_batch_size != "all" and (
            not isinstance(initial_batch_size, int) or initial_batch_size < 1
        ):
            raise ValueError("initial_batch_size must be 'all' or a positive integer")

        self.initial_batch_size = initial_batch_size
        self.min_batch_size = min_batch_size
        self.reduction_factor = reduction_factor
        self._states: dict[str, MeterBatchState] = {}

    def get_batch_size(self, meter_id: str, property_count: int) -> int:
        """Current batch size for a meter, initializing it on first use"""
        state = self._states.get(meter_id)
        if state is None:
            if self.initial_batch_size == "all":
                size = property_count
            else:
                size = self.initial_batch_size
            state = MeterBatchState(meter_id, max(size, self.min_batch_size))
            self._states[meter_id] = state
            logger.debug(f"Initialized batch size for meter {meter_id}: {state.current_batch_size}")
        elif (
            self.initial_batch_size == "all"
            and not state.reduced
            and property_count > state.current_batch_size
        ):
            # Registers added since the meter was first seen
            state.current_batch_size = property_count

        return state.current_batch_size

    def record_success(self, meter_id: str, batch_size: int | None = None) -> None:
        state = self._states.get(meter_id)
        if state is None:
            logger.warning(f"Recorded success for unknown meter {meter_id}")
            return

        state.consecutive_successes += 1
        state.consecutive_timeouts = 0
        state.last_successful_batch_size = batch_size or state.current_batch_size
        state.last_updated = utc_now()

    def record_timeout(self, meter_id: str) -> None:
        state = self._states.get(meter_id)
        if state is None:
            logger.warning(f"Recorded timeout for unknown meter {meter_id}")
            return

        previous = state.current_batch_size
        state.current_batch_size = max(
            self.min_batch_size,
            math.floor(previous * self.reduction_factor),
        )
        state.consecutive_timeouts += 1
        state.consecutive_successes = 0
        state.reduced = True
        state.last_updated = utc_now()

        if state.current_batch_size < previous:
            logger.info(
                f"Reduced batch size for meter {meter_id}: {previous} -> {state.current_batch_size}",
                extra={"meter_id": meter_id, "batch_size": state.current_batch_size},
            )

    def get_meter_state(self, meter_id: str) -> MeterBatchState | None:
        return self._states.get(meter_id)

    def get_all_states(self) -> list[MeterBatchState]:
        return list(self._states.values())

    def reset(self, meter_id: str | None = None) -> None:
        """Forget one meter, or every meter when meter_id is None"""
        if meter_id is None:
            self._states.clear()
        else:
            self._states.pop(meter_id, None)
