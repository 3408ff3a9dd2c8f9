import pytest

from llm.client import CompletionDone
from llm.partial_json import FieldCompleted, FieldStarted, FieldUpdated
from llm.schemas import TurnContent
from turns.streaming import GenerationTracker, StreamingState


def test_tracker_moves_fields_from_pending_to_completed() -> None:
    tracker = GenerationTracker()
    assert tracker.pending == {"performance", "vectors", "evolution", "meta"}

    tracker.apply(FieldStarted("performance"))
    tracker.apply(FieldUpdated("performance", "Hel"))
    assert tracker.current_field == "performance"
    assert tracker.snapshot() == {"performance": "Hel"}

    tracker.apply(FieldCompleted("performance", "Hello"))
    assert tracker.current_field is None
    assert "performance" not in tracker.pending
    assert tracker.snapshot() == {"performance": "Hello"}

    tracker.apply(CompletionDone(content=TurnContent(performance="Hello"), raw='{"performance": "Hello"}'))
    assert tracker.status == "done"
    assert tracker.result.performance == "Hello"


def test_completed_field_is_frozen() -> None:
    tracker = GenerationTracker()
    tracker.apply(FieldCompleted("meta", "first"))
    with pytest.raises(RuntimeError):
        tracker.apply(FieldUpdated("meta", "second"))
    with pytest.raises(RuntimeError):
        tracker.apply(FieldCompleted("meta", "second"))


def test_final_object_must_agree_with_completed_fields() -> None:
    tracker = GenerationTracker()
    tracker.apply(FieldCompleted("performance", "Hello"))
    with pytest.raises(RuntimeError):
        tracker.finish(TurnContent(performance="Goodbye"))


def test_null_fields_do_not_conflict_with_final_object() -> None:
    tracker = GenerationTracker()
    tracker.apply(FieldCompleted("vectors", {"location": "door", "posture": None}))
    tracker.apply(FieldCompleted("meta", None))
    tracker.finish(TurnContent.model_validate({"performance": "x", "vectors": {"location": "door"}}))
    assert tracker.status == "done"


def test_finished_tracker_rejects_more_events() -> None:
    tracker = GenerationTracker()
    tracker.cancel()
    with pytest.raises(RuntimeError):
        tracker.apply(FieldStarted("performance"))


def test_streaming_state_reports_phase_and_clears() -> None:
    state = StreamingState()
    assert state.phase is None

    tracker = state.begin("prod", "A1", "t1")
    tracker.apply(FieldCompleted("performance", "Hi"))
    tracker.apply(FieldStarted("evolution"))
    assert state.phase == "evolving"
    assert state.to_dict() == {
        "is_streaming": True,
        "production_id": "prod",
        "assistant_id": "A1",
        "turn_id": "t1",
        "started_fields": ["evolution", "performance"],
        "completed_fields": ["performance"],
        "phase": "evolving",
        "error": None,
    }

    state.clear(error="provider down")
    assert not state.is_streaming
    assert state.completed_fields == set()
    assert state.error == "provider down"

    state.begin("prod", "A2", "t2")
    assert state.error is None
