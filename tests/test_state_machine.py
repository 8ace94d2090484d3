from __future__ import annotations

import pytest

from defectai.inspection.state_machine import InspectionState, InspectionStateMachine
from defectai.models import ClassifierSample, PresenceSignal
from defectai.scoring.aggregate import aggregate

ENTERED = PresenceSignal(present=True, just_entered=True)
PRESENT = PresenceSignal(present=True)
LEFT = PresenceSignal(present=False, just_left=True)
ABSENT = PresenceSignal.absent()


def _sample(label: str, confidence: float = 0.8) -> ClassifierSample:
    return ClassifierSample(label=label, confidence=confidence)


def _ticking_clock(*values: float):
    ticks = iter(values)
    return lambda: next(ticks)


def test_full_inspection_cycle() -> None:
    machine = InspectionStateMachine(clock=_ticking_clock(10.0, 12.5))
    samples = [_sample("ok", 0.9), _sample("scratch", 0.8), _sample("scratch", 0.7)]

    entry = machine.process_frame(None, ENTERED)
    assert entry.state_changed
    assert not entry.inspection_complete
    assert machine.state is InspectionState.INSPECTING

    for sample in samples:
        outcome = machine.process_frame(sample, PRESENT)
        assert not outcome.state_changed
        assert outcome.current_result is not None

    final = machine.process_frame(None, LEFT)

    assert final.state_changed
    assert final.inspection_complete
    assert final.final_result == aggregate(samples)
    assert final.final_result.label == "scratch"
    assert final.completed_inspection is not None
    assert final.completed_inspection.sample_count == 3
    assert final.completed_inspection.duration_seconds == pytest.approx(2.5)
    assert machine.buffer == ()
    assert machine.state is InspectionState.IDLE
    assert machine.current_inspection is None


def test_buffer_keeps_only_most_recent_samples() -> None:
    machine = InspectionStateMachine(buffer_size=8)
    machine.process_frame(None, ENTERED)

    pushed = [_sample(f"label_{idx}") for idx in range(10)]
    for sample in pushed:
        machine.process_frame(sample, PRESENT)

    assert machine.buffer == tuple(pushed[2:])


def test_current_result_reflects_buffer_window() -> None:
    machine = InspectionStateMachine(buffer_size=2)
    machine.process_frame(None, ENTERED)
    machine.process_frame(_sample("crack", 0.9), PRESENT)
    machine.process_frame(_sample("ok", 0.7), PRESENT)

    outcome = machine.process_frame(_sample("ok", 0.5), PRESENT)

    assert outcome.current_result is not None
    assert outcome.current_result.label == "ok"
    assert outcome.current_result.confidence == pytest.approx(0.6)


def test_samples_while_idle_are_ignored() -> None:
    machine = InspectionStateMachine()

    outcome = machine.process_frame(_sample("crack"), ABSENT)

    assert outcome.current_result is None
    assert not outcome.state_changed
    assert machine.buffer == ()
    assert machine.state is InspectionState.IDLE


def test_leave_edge_while_idle_is_a_no_op() -> None:
    machine = InspectionStateMachine()

    outcome = machine.process_frame(None, LEFT)

    assert not outcome.state_changed
    assert not outcome.inspection_complete
    assert outcome.final_result is None


def test_sample_on_entry_frame_is_buffered() -> None:
    machine = InspectionStateMachine()

    outcome = machine.process_frame(_sample("scratch", 0.6), ENTERED)

    assert outcome.state_changed
    assert outcome.current_result is not None
    assert outcome.current_result.label == "scratch"
    assert len(machine.buffer) == 1


def test_sample_on_exit_frame_counts_toward_final_verdict() -> None:
    machine = InspectionStateMachine()
    machine.process_frame(None, ENTERED)
    machine.process_frame(_sample("ok", 0.9), PRESENT)

    outcome = machine.process_frame(_sample("crack", 0.4), LEFT)

    # ok and crack tie; ok was seen first.
    assert outcome.final_result is not None
    assert outcome.final_result.label == "ok"
    assert outcome.current_result is not None


def test_missing_samples_do_not_block_transitions() -> None:
    machine = InspectionStateMachine()

    machine.process_frame(None, ENTERED)
    middle = machine.process_frame(None, PRESENT)
    final = machine.process_frame(None, LEFT)

    assert middle.current_result is None
    assert final.inspection_complete
    assert final.final_result is None
    assert machine.state is InspectionState.IDLE


def test_new_inspection_starts_with_empty_buffer() -> None:
    machine = InspectionStateMachine()
    machine.process_frame(None, ENTERED)
    machine.process_frame(_sample("crack"), PRESENT)
    machine.process_frame(None, LEFT)

    machine.process_frame(None, ENTERED)
    outcome = machine.process_frame(_sample("ok"), PRESENT)

    assert machine.buffer == (_sample("ok"),)
    assert outcome.current_result is not None
    assert outcome.current_result.label == "ok"


def test_manual_inspect_leaves_state_and_buffer_untouched() -> None:
    machine = InspectionStateMachine()
    machine.process_frame(None, ENTERED)
    machine.process_frame(_sample("ok", 0.9), PRESENT)

    verdict = machine.manual_inspect(_sample("crack", 0.65))

    assert verdict is not None
    assert verdict.label == "crack"
    assert verdict.confidence == pytest.approx(0.65)
    assert machine.buffer == (_sample("ok", 0.9),)
    assert machine.state is InspectionState.INSPECTING
    assert machine.manual_inspect(None) is None


def test_abort_discards_active_inspection() -> None:
    machine = InspectionStateMachine()
    machine.process_frame(None, ENTERED)
    machine.process_frame(_sample("crack"), PRESENT)

    assert machine.abort() is True
    assert machine.state is InspectionState.IDLE
    assert machine.buffer == ()
    assert machine.current_inspection is None
    assert machine.abort() is False

    after = machine.process_frame(None, LEFT)
    assert not after.inspection_complete


def test_buffer_size_must_be_positive() -> None:
    with pytest.raises(ValueError, match="buffer size"):
        InspectionStateMachine(buffer_size=0)
