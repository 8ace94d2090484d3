from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from defectai.features.presence import PresenceDetector
from defectai.ingest.camera import CapturedFrame
from defectai.inspection.state_machine import InspectionState, InspectionStateMachine
from defectai.models import ClassifierSample
from defectai.pipeline import InspectionPipeline
from defectai.storage.history import InspectionHistory


def _captured(value: int, captured_at: float = 1_700_000_000.0) -> CapturedFrame:
    working = np.full((120, 160, 3), value, dtype=np.uint8)
    return CapturedFrame(full=working, working=working, captured_at=captured_at)


class _ScriptedFrameSource:
    def __init__(self, frames: list[CapturedFrame | None]) -> None:
        self.frames = list(frames)

    def read(self) -> CapturedFrame | None:
        if not self.frames:
            return None
        return self.frames.pop(0)


class _ScriptedClassifier:
    def __init__(self, results: list[ClassifierSample | Exception | None]) -> None:
        self.results = list(results)
        self.calls = 0

    def classify(self, image):
        self.calls += 1
        result = self.results.pop(0) if self.results else None
        if isinstance(result, Exception):
            raise result
        return result


def _ticking_clock(*values: float):
    ticks = iter(values)
    return lambda: next(ticks)


def _pipeline(
    frames: list[CapturedFrame | None],
    classifier: _ScriptedClassifier | None,
    history: InspectionHistory | None = None,
    *,
    every_n_frames: int = 1,
    clock=None,
) -> InspectionPipeline:
    return InspectionPipeline(
        frame_source=_ScriptedFrameSource(frames),
        classifier=classifier,
        detector=PresenceDetector(exit_frames_required=3),
        state_machine=InspectionStateMachine(buffer_size=8, clock=clock or _ticking_clock(10.0, 12.5)),
        history=history,
        every_n_frames=every_n_frames,
        thumbnail_fn=lambda frame, size: f"thumb-{size}",
    )


def test_object_pass_produces_one_saved_inspection(tmp_path: Path) -> None:
    scratch = ClassifierSample(label="scratch", confidence=0.8)
    history = InspectionHistory(tmp_path / "inspections.jsonl")
    pipeline = _pipeline(
        [_captured(0), _captured(255), _captured(255), _captured(255), _captured(255, captured_at=1_700_000_004.5)],
        _ScriptedClassifier([scratch] * 5),
        history,
    )

    results = [pipeline.step() for _ in range(5)]

    assert results[0].outcome.current_result is None
    assert results[1].presence.just_entered
    assert results[1].outcome.state_changed
    assert all(result.outcome.current_result is not None for result in results[1:])
    final = results[-1]
    assert final.presence.just_left
    assert final.outcome.inspection_complete
    assert final.outcome.final_result.label == "scratch"
    assert final.saved_record is not None
    assert final.saved_record.id == 1
    assert final.saved_record.duration_ms == 2500
    assert final.saved_record.timestamp == 1_700_000_004.5
    assert final.saved_record.thumbnail == "thumb-96"
    assert pipeline.state is InspectionState.IDLE
    assert pipeline.stats.defective == 1

    stored = history.list_records()
    assert len(stored) == 1
    assert stored[0].defect_type == "scratch"
    assert stored[0].confidence == pytest.approx(0.8)


def test_not_ready_frames_leave_presence_state_alone() -> None:
    pipeline = _pipeline([_captured(0), _captured(255), None, None, _captured(255)], None)

    pipeline.step()
    entered = pipeline.step()
    not_ready = [pipeline.step(), pipeline.step()]
    resumed = pipeline.step()

    assert entered.presence.just_entered
    assert all(not result.frame_ready for result in not_ready)
    assert all(not result.presence.present for result in not_ready)
    assert pipeline.detector.present
    assert resumed.presence.present
    assert pipeline.detector.exit_frame_count == 1
    assert pipeline.state is InspectionState.INSPECTING


def test_classifier_failure_is_treated_as_missing_sample() -> None:
    ok = ClassifierSample(label="ok", confidence=0.9)
    classifier = _ScriptedClassifier([None, ok, RuntimeError("model not ready"), ok])
    pipeline = _pipeline([_captured(0), _captured(255), _captured(255), _captured(255)], classifier)

    results = [pipeline.step() for _ in range(4)]

    assert results[2].sample is None
    assert results[2].presence.present
    assert pipeline.state_machine.buffer == (ok, ok)
    assert pipeline.state is InspectionState.INSPECTING


def test_classification_is_throttled_to_every_nth_frame() -> None:
    classifier = _ScriptedClassifier([])
    pipeline = _pipeline([_captured(0)] * 6, classifier, every_n_frames=3)

    for _ in range(6):
        pipeline.step()

    assert classifier.calls == 2


def test_leaving_without_samples_records_nothing(tmp_path: Path) -> None:
    history = InspectionHistory(tmp_path / "inspections.jsonl")
    pipeline = _pipeline([_captured(0), _captured(255), _captured(255), _captured(255), _captured(255)], None, history)

    results = [pipeline.step() for _ in range(5)]

    assert results[-1].outcome.inspection_complete
    assert results[-1].saved_record is None
    assert history.list_records() == []


def test_manual_inspect_bypasses_buffer() -> None:
    crack = ClassifierSample(label="crack", confidence=0.66)
    pipeline = _pipeline([_captured(0)], _ScriptedClassifier([None, crack]))
    pipeline.step()

    verdict = pipeline.manual_inspect()

    assert verdict is not None
    assert verdict.defect_type == "crack"
    assert pipeline.state_machine.buffer == ()


def test_reset_stats_aborts_active_inspection(tmp_path: Path) -> None:
    history = InspectionHistory(tmp_path / "inspections.jsonl")
    ok = ClassifierSample(label="ok", confidence=0.9)
    pipeline = _pipeline([_captured(0), _captured(255)], _ScriptedClassifier([ok, ok]), history)
    pipeline.stats.record("defective", "crack")
    pipeline.step()
    pipeline.step()
    assert pipeline.state is InspectionState.INSPECTING

    pipeline.reset_stats()

    assert pipeline.state is InspectionState.IDLE
    assert pipeline.state_machine.buffer == ()
    assert pipeline.stats.total == 0


def test_restart_resets_detector_and_inspection() -> None:
    pipeline = _pipeline([_captured(0), _captured(255), _captured(0)], None)
    pipeline.step()
    pipeline.step()

    pipeline.restart()
    after = pipeline.step()

    assert not after.presence.just_entered
    assert not after.presence.present
    assert pipeline.state is InspectionState.IDLE


def test_every_n_frames_must_be_positive() -> None:
    with pytest.raises(ValueError, match="every_n_frames"):
        _pipeline([], None, every_n_frames=0)
