from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import Callable

from defectai.models import (
    AggregatedVerdict,
    ClassifierSample,
    FrameOutcome,
    Inspection,
    PresenceSignal,
)
from defectai.scoring.aggregate import aggregate, verdict_from_sample

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 8


class InspectionState(str, Enum):
    IDLE = "idle"
    INSPECTING = "inspecting"


class InspectionStateMachine:
    """Drive one inspection per object from presence edges and classifier samples."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE, clock: Callable[[], float] = time.time) -> None:
        if buffer_size < 1:
            raise ValueError(f"Prediction buffer size must be >= 1, got {buffer_size}.")
        self.buffer_size = int(buffer_size)
        self._clock = clock
        self._state = InspectionState.IDLE
        self._buffer: deque[ClassifierSample] = deque(maxlen=self.buffer_size)
        self._inspection: Inspection | None = None

    @property
    def state(self) -> InspectionState:
        return self._state

    @property
    def buffer(self) -> tuple[ClassifierSample, ...]:
        return tuple(self._buffer)

    @property
    def current_inspection(self) -> Inspection | None:
        return self._inspection

    def process_frame(self, sample: ClassifierSample | None, presence: PresenceSignal) -> FrameOutcome:
        """Advance the lifecycle by one frame.

        Order within a frame: an entry edge starts a fresh inspection, then the
        sample (if any) is buffered, then an exit edge finalizes the verdict.
        """

        outcome = FrameOutcome()

        if presence.just_entered and self._state is InspectionState.IDLE:
            self._start()
            outcome.state_changed = True

        if self._state is InspectionState.INSPECTING and sample is not None:
            self._buffer.append(sample)
            if self._inspection is not None:
                self._inspection.sample_count += 1
            outcome.current_result = aggregate(self._buffer)

        if presence.just_left and self._state is InspectionState.INSPECTING:
            outcome.final_result = aggregate(self._buffer)
            outcome.inspection_complete = True
            outcome.completed_inspection = self._finish()
            outcome.state_changed = True

        return outcome

    def manual_inspect(self, sample: ClassifierSample | None) -> AggregatedVerdict | None:
        """Immediate verdict from one sample; state and buffer are left alone."""

        return verdict_from_sample(sample)

    def abort(self) -> bool:
        """Force the machine back to idle, discarding any active inspection."""

        if self._state is InspectionState.IDLE:
            return False
        logger.info("Aborting active inspection with %d buffered samples", len(self._buffer))
        self._finish()
        return True

    def _start(self) -> None:
        self._state = InspectionState.INSPECTING
        self._inspection = Inspection(started_at=self._clock())
        self._buffer.clear()
        logger.debug("Inspection started at %.3f", self._inspection.started_at)

    def _finish(self) -> Inspection | None:
        inspection = self._inspection
        if inspection is not None:
            inspection.ended_at = self._clock()
        self._state = InspectionState.IDLE
        self._inspection = None
        self._buffer.clear()
        return inspection
