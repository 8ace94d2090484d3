from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from defectai.classify.loader import Classifier, classify_safely
from defectai.features.presence import PresenceDetector
from defectai.ingest.camera import CapturedFrame, make_thumbnail
from defectai.inspection.state_machine import InspectionState, InspectionStateMachine
from defectai.models import (
    AggregatedVerdict,
    ClassifierSample,
    FrameOutcome,
    InspectionRecord,
    InspectionStats,
    PresenceSignal,
)
from defectai.storage.history import InspectionHistory

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    def read(self) -> CapturedFrame | None:
        ...


@dataclass(slots=True)
class FrameResult:
    """Everything one ``step()`` produced, for the host loop to display or log."""

    frame_ready: bool
    presence: PresenceSignal
    sample: ClassifierSample | None
    outcome: FrameOutcome
    saved_record: InspectionRecord | None = None


class InspectionPipeline:
    """Per-frame wiring of frame source, presence detector, classifier and state machine."""

    def __init__(
        self,
        *,
        frame_source: FrameSource,
        classifier: Classifier | None,
        detector: PresenceDetector,
        state_machine: InspectionStateMachine,
        history: InspectionHistory | None = None,
        every_n_frames: int = 1,
        auto_save: bool = True,
        thumbnail_size: int = 96,
        thumbnail_fn: Callable[[Any, int], str | None] | None = None,
    ) -> None:
        if every_n_frames < 1:
            raise ValueError(f"every_n_frames must be >= 1, got {every_n_frames}.")
        self.frame_source = frame_source
        self.classifier = classifier
        self.detector = detector
        self.state_machine = state_machine
        self.history = history
        self.every_n_frames = int(every_n_frames)
        self.auto_save = auto_save
        self.thumbnail_size = int(thumbnail_size)
        self._thumbnail_fn = thumbnail_fn or (lambda frame, size: make_thumbnail(frame, size))
        self._frame_index = 0
        self._last_frame: CapturedFrame | None = None
        self.stats = history.stats() if history is not None else InspectionStats()

    @property
    def state(self) -> InspectionState:
        return self.state_machine.state

    def step(self) -> FrameResult:
        """Evaluate the current frame once."""

        frame = self.frame_source.read()
        if frame is None:
            outcome = self.state_machine.process_frame(None, PresenceSignal.absent())
            return FrameResult(frame_ready=False, presence=PresenceSignal.absent(), sample=None, outcome=outcome)

        self._last_frame = frame
        presence = self.detector.detect(frame.working)

        sample: ClassifierSample | None = None
        if self.classifier is not None and self._frame_index % self.every_n_frames == 0:
            sample = classify_safely(self.classifier, frame.full)
        self._frame_index += 1

        outcome = self.state_machine.process_frame(sample, presence)
        if outcome.state_changed:
            logger.info("Inspection state -> %s", self.state_machine.state.value)

        saved_record = None
        if outcome.inspection_complete and outcome.final_result is not None:
            saved_record = self._complete(outcome, frame)
        elif outcome.inspection_complete:
            logger.info("Object left before any classification; nothing to record.")

        return FrameResult(
            frame_ready=True,
            presence=presence,
            sample=sample,
            outcome=outcome,
            saved_record=saved_record,
        )

    def manual_inspect(self) -> AggregatedVerdict | None:
        """Classify the current frame once and return its unaggregated verdict."""

        if self.classifier is None:
            return None
        frame = self.frame_source.read() or self._last_frame
        if frame is None:
            return None
        return self.state_machine.manual_inspect(classify_safely(self.classifier, frame.full))

    def reset_stats(self) -> None:
        """Zero running statistics and the stored history."""

        self.state_machine.abort()
        self.stats = InspectionStats()
        if self.history is not None:
            self.history.clear()

    def restart(self) -> None:
        """Treat the next frame as the first of a new stream."""

        self.state_machine.abort()
        self.detector.reset()
        self._frame_index = 0
        self._last_frame = None

    def _complete(self, outcome: FrameOutcome, frame: CapturedFrame) -> InspectionRecord | None:
        verdict = outcome.final_result
        self.stats.record(verdict.status, verdict.defect_type)
        logger.info(
            "Inspection complete: %s (%.1f%%), defect rate %s%%",
            verdict.label,
            verdict.confidence * 100,
            self.stats.defect_rate,
        )

        if not self.auto_save or self.history is None:
            return None

        inspection = outcome.completed_inspection
        duration_seconds = inspection.duration_seconds if inspection is not None else 0.0
        record = InspectionRecord(
            timestamp=frame.captured_at,
            status=verdict.status,
            defect_type=verdict.defect_type,
            confidence=verdict.confidence,
            duration_ms=int(round(duration_seconds * 1000)),
            thumbnail=self._thumbnail_fn(frame.full, self.thumbnail_size),
        )
        return self.history.append(record)
