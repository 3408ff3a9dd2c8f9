from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from llm.client import CompletionDone
from llm.partial_json import FieldCompleted, FieldStarted, FieldUpdated
from llm.schemas import CONTENT_FIELDS, TurnContent
from turns.types import AssistantTurn

FIELD_PHASES = {
    "performance": "performing",
    "vectors": "vectorizing",
    "evolution": "evolving",
    "meta": "commenting",
}


@dataclass(frozen=True)
class TurnStarted:
    turn: AssistantTurn


@dataclass(frozen=True)
class TurnCompleted:
    turn: AssistantTurn


StreamEvent = Union[TurnStarted, FieldStarted, FieldUpdated, FieldCompleted, CompletionDone, TurnCompleted]


class GenerationTracker:
    """Field lifecycle for one in-flight generation.

    pending -> started -> completed per field, then the whole generation ends
    in exactly one of done, failed or cancelled.
    """

    def __init__(self, fields: tuple[str, ...] = CONTENT_FIELDS) -> None:
        self.pending: set[str] = set(fields)
        self.started: list[str] = []
        self.completed: dict[str, Any] = {}
        self.partial: dict[str, Any] = {}
        self.status = "streaming"
        self.error: str | None = None
        self.result: TurnContent | None = None

    @property
    def current_field(self) -> str | None:
        for name in reversed(self.started):
            if name not in self.completed:
                return name
        return None

    def apply(self, event: Any) -> None:
        if self.status != "streaming":
            raise RuntimeError(f"Generation already {self.status}.")
        if isinstance(event, FieldStarted):
            self._start(event.name)
        elif isinstance(event, FieldUpdated):
            if event.name in self.completed:
                raise RuntimeError(f"Field {event.name!r} changed after completion.")
            self._start(event.name)
            self.partial[event.name] = event.value
        elif isinstance(event, FieldCompleted):
            if event.name in self.completed:
                raise RuntimeError(f"Field {event.name!r} completed twice.")
            self._start(event.name)
            self.completed[event.name] = event.value
            self.partial.pop(event.name, None)
        elif isinstance(event, CompletionDone):
            self.finish(event.content)

    def snapshot(self) -> dict[str, Any]:
        data = dict(self.partial)
        data.update(self.completed)
        return data

    def finish(self, content: TurnContent) -> None:
        final = content.model_dump(exclude_none=True)
        for name, value in self.completed.items():
            if name in final and final[name] != _drop_none(value):
                raise RuntimeError(f"Final value for {name!r} differs from the completed one.")
        self.result = content
        self.status = "done"

    def fail(self, error: str) -> None:
        self.error = error
        self.status = "failed"

    def cancel(self) -> None:
        self.status = "cancelled"

    def _start(self, name: str) -> None:
        if name not in self.started:
            self.started.append(name)
            self.pending.discard(name)


@dataclass
class StreamingState:
    is_streaming: bool = False
    production_id: str | None = None
    assistant_id: str | None = None
    turn_id: str | None = None
    tracker: GenerationTracker | None = None
    error: str | None = None

    @property
    def started_fields(self) -> set[str]:
        return set(self.tracker.started) if self.tracker else set()

    @property
    def completed_fields(self) -> set[str]:
        return set(self.tracker.completed) if self.tracker else set()

    @property
    def phase(self) -> str | None:
        if self.tracker is None or not self.is_streaming:
            return None
        return FIELD_PHASES.get(self.tracker.current_field or "")

    def begin(self, production_id: str, assistant_id: str, turn_id: str) -> GenerationTracker:
        self.is_streaming = True
        self.production_id = production_id
        self.assistant_id = assistant_id
        self.turn_id = turn_id
        self.tracker = GenerationTracker()
        self.error = None
        return self.tracker

    def clear(self, error: str | None = None) -> None:
        self.is_streaming = False
        self.production_id = None
        self.assistant_id = None
        self.turn_id = None
        self.tracker = None
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_streaming": self.is_streaming,
            "production_id": self.production_id,
            "assistant_id": self.assistant_id,
            "turn_id": self.turn_id,
            "started_fields": sorted(self.started_fields),
            "completed_fields": sorted(self.completed_fields),
            "phase": self.phase,
            "error": self.error,
        }


def _drop_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _drop_none(item) for key, item in value.items() if item is not None}
    return value
