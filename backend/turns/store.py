from __future__ import annotations

import logging
import threading
from typing import Any, Iterator

from pydantic import ValidationError as SchemaValidationError

from llm.client import CompletionClient, CompletionDone, LLMClientError, PromptFrame
from llm.partial_json import FieldCompleted, FieldUpdated
from llm.schemas import (
    CONTENT_FIELDS,
    ChatMessage,
    ModelConfig,
    TurnContent,
    TurnPatch,
    merge_content,
)
from turns import navigator
from turns.errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from turns.navigator import ForestIndex
from turns.persistence import TurnRepository
from turns.streaming import GenerationTracker, StreamEvent, StreamingState, TurnCompleted, TurnStarted
from turns.types import (
    DEFAULT_SENDER_NAME,
    AssistantTurn,
    Turn,
    UserTurn,
    UserTurnInput,
    new_turn_id,
    with_changes,
)

logger = logging.getLogger(__name__)


class _Forest:
    def __init__(self) -> None:
        self.parents: dict[str, str | None] = {}
        self.children: dict[str | None, list[str]] = {}
        self.active: str | None = None

    @property
    def index(self) -> ForestIndex:
        return ForestIndex(parents=self.parents, children=self.children)

    def attach(self, turn: Turn) -> None:
        self.parents[turn.id] = turn.parent_id
        self.children.setdefault(turn.parent_id, []).append(turn.id)

    def detach(self, turn_id: str) -> None:
        parent_id = self.parents.pop(turn_id)
        siblings = self.children.get(parent_id, [])
        if turn_id in siblings:
            siblings.remove(turn_id)
        if not siblings:
            self.children.pop(parent_id, None)
        self.children.pop(turn_id, None)


class TurnStore:
    """Branching turn history for the productions of one session.

    All reads and writes of a production's forest go through this object; the
    persistence adapter only ever sees create/update/delete of single turns.
    """

    def __init__(
        self,
        repository: TurnRepository,
        client: CompletionClient,
        *,
        frame: PromptFrame | None = None,
        model_config: ModelConfig | None = None,
    ) -> None:
        self.repository = repository
        self.client = client
        self.frame = frame or PromptFrame()
        self.model_config = model_config
        self.streaming = StreamingState()
        self._turns: dict[str, Turn] = {}
        self._forests: dict[str, _Forest] = {}
        self._lock = threading.RLock()
        self._live_stream: AssistantTurnStream | None = None

    # Queries

    def load(self, production_id: str) -> list[Turn]:
        if self.streaming.is_streaming and self.streaming.production_id == production_id:
            raise ConflictError(f"Production {production_id} is streaming a turn.")
        turns = self.repository.list_turns(production_id)
        forest = _Forest()
        known: dict[str, Turn] = {}
        for turn in sorted(turns, key=lambda item: item.created_at):
            if turn.production_id != production_id:
                logger.warning("Skipping turn %s from production %s", turn.id, turn.production_id)
                continue
            if turn.parent_id is not None and turn.parent_id not in known:
                logger.warning("Skipping orphaned turn %s (parent %s missing)", turn.id, turn.parent_id)
                continue
            known[turn.id] = turn
            forest.attach(turn)
        with self._lock:
            previous = self._forests.get(production_id)
            if previous is not None:
                for turn_id in previous.parents:
                    self._turns.pop(turn_id, None)
                if previous.active in forest.parents:
                    forest.active = previous.active
            if forest.active is None and forest.children.get(None):
                forest.active = navigator.get_latest_descendant(
                    forest.index, forest.children[None][-1]
                )
            self._turns.update(known)
            self._forests[production_id] = forest
        logger.info("Loaded %d turns for production %s", len(known), production_id)
        return list(known.values())

    def get_turn(self, turn_id: str) -> Turn:
        turn = self._turns.get(turn_id)
        if turn is None:
            raise NotFoundError(f"Turn {turn_id} not found.")
        return turn

    def get_production_turns(self, production_id: str) -> list[Turn]:
        forest = self._forest(production_id)
        with self._lock:
            return [self._turns[turn_id] for turn_id in self._walk(forest)]

    def get_children(self, production_id: str, parent_id: str | None) -> list[str]:
        forest = self._forest(production_id)
        if parent_id is not None and parent_id not in forest.parents:
            raise NotFoundError(f"Turn {parent_id} not found in production {production_id}.")
        return navigator.get_children(forest.index, parent_id)

    def get_siblings(self, turn_id: str) -> list[str]:
        turn = self.get_turn(turn_id)
        return navigator.get_siblings(self._forest(turn.production_id).index, turn_id)

    def get_active_turn(self, production_id: str) -> str | None:
        return self._forest(production_id).active

    def set_active_turn(self, production_id: str, turn_id: str | None) -> None:
        forest = self._forest(production_id)
        with self._lock:
            if turn_id is not None and turn_id not in forest.parents:
                raise NotFoundError(f"Turn {turn_id} not found in production {production_id}.")
            forest.active = turn_id

    def get_active_path(self, production_id: str) -> list[Turn]:
        forest = self._forest(production_id)
        with self._lock:
            return [self._turns[turn_id] for turn_id in navigator.get_path(forest.index, forest.active)]

    def linearize(self, production_id: str, leaf_turn_id: str | None) -> list[ChatMessage]:
        forest = self._forest(production_id)
        if leaf_turn_id is not None and leaf_turn_id not in forest.parents:
            raise NotFoundError(f"Turn {leaf_turn_id} not found in production {production_id}.")
        with self._lock:
            return self.client.linearize(self._turns, leaf_turn_id, self.frame)

    def navigate_sibling(self, production_id: str, turn_id: str, step: int) -> str | None:
        forest = self._forest(production_id)
        if turn_id not in forest.parents:
            raise NotFoundError(f"Turn {turn_id} not found in production {production_id}.")
        if step not in (-1, 1):
            raise ValidationError("step must be -1 or 1.")
        with self._lock:
            siblings = navigator.get_siblings(forest.index, turn_id)
            target = navigator.navigate_siblings(forest.index, forest.active, siblings, step)
            if target is not None:
                forest.active = target
            return forest.active

    def get_persona_evolutions(
        self,
        production_id: str,
        assistant_id: str,
        *,
        active_branch_only: bool = False,
    ) -> list[dict[str, Any]]:
        forest = self._forest(production_id)
        with self._lock:
            if active_branch_only:
                turn_ids = navigator.get_path(forest.index, forest.active)
            else:
                turn_ids = sorted(forest.parents, key=lambda turn_id: self._turns[turn_id].created_at)
            entries = []
            for turn_id in turn_ids:
                turn = self._turns[turn_id]
                if not isinstance(turn, AssistantTurn) or turn.assistant_id != assistant_id:
                    continue
                if turn.content.evolution is None or turn.id == self.streaming.turn_id:
                    continue
                entry = {"turn_id": turn.id, "created_at": turn.created_at.isoformat()}
                entry.update(turn.content.evolution.model_dump())
                entries.append(entry)
            return entries

    # Mutations

    def insert_user_turn(self, data: UserTurnInput) -> UserTurn:
        if not data.production_id:
            raise ValidationError("production_id is required.")
        if not data.receiving_assistant_id:
            raise ValidationError("receiving_assistant_id is required.")
        if not data.performance or not data.performance.strip():
            raise ValidationError("performance is required.")
        forest = self._forest(data.production_id)
        with self._lock:
            if self.streaming.is_streaming and self.streaming.production_id == data.production_id:
                raise ConflictError(f"Production {data.production_id} is streaming a turn.")
            turn = UserTurn(
                id=new_turn_id(),
                production_id=data.production_id,
                parent_id=forest.active,
                content=TurnContent(performance=data.performance),
                receiving_assistant_id=data.receiving_assistant_id,
                sending_persona_id=data.sending_persona_id,
                sender_name=data.sender_name or DEFAULT_SENDER_NAME,
                is_directive=data.is_directive,
            )
            previous_active = forest.active
            self._attach(forest, turn)
            forest.active = turn.id
            try:
                persisted = self.repository.create_turn(turn)
            except Exception:
                self._detach(forest, turn.id)
                forest.active = previous_active
                logger.exception("Persisting user turn %s failed", turn.id)
                raise
            self._turns[turn.id] = persisted
        logger.info("Inserted user turn %s in production %s", turn.id, turn.production_id)
        return persisted

    def insert_assistant_turn(
        self,
        production_id: str,
        assistant_id: str,
        parent_id: str | None,
        *,
        model_config: ModelConfig | None = None,
    ) -> AssistantTurnStream:
        if not assistant_id:
            raise ValidationError("assistant_id is required.")
        config = model_config or self.model_config
        if config is None:
            raise ValidationError("No model configuration for completion.")
        forest = self._forest(production_id)
        with self._lock:
            if self.streaming.is_streaming:
                raise ConflictError(
                    f"A turn is already streaming for production {self.streaming.production_id}."
                )
            if parent_id is not None and parent_id not in forest.parents:
                raise NotFoundError(f"Turn {parent_id} not found in production {production_id}.")
            messages = self.client.linearize(self._turns, parent_id, self.frame)
            placeholder = AssistantTurn(
                id=new_turn_id(),
                production_id=production_id,
                parent_id=parent_id,
                content=TurnContent(performance=""),
                assistant_id=assistant_id,
            )
            self._attach(forest, placeholder)
            tracker = self.streaming.begin(production_id, assistant_id, placeholder.id)
            stream = AssistantTurnStream(
                self, placeholder, messages, config, tracker, threading.Event()
            )
            self._live_stream = stream
        logger.info(
            "Streaming assistant turn %s for %s under %s",
            placeholder.id,
            assistant_id,
            parent_id,
        )
        return stream

    def regenerate_turn(
        self,
        turn_id: str,
        assistant_id: str | None = None,
        *,
        model_config: ModelConfig | None = None,
    ) -> AssistantTurnStream:
        turn = self.get_turn(turn_id)
        if not isinstance(turn, AssistantTurn):
            raise ValidationError("Only assistant turns can be regenerated.")
        return self.insert_assistant_turn(
            turn.production_id,
            assistant_id or turn.assistant_id,
            turn.parent_id,
            model_config=model_config,
        )

    def generate_assistant_turn(
        self,
        production_id: str,
        assistant_id: str,
        parent_id: str | None,
        *,
        model_config: ModelConfig | None = None,
    ) -> AssistantTurn:
        stream = self.insert_assistant_turn(
            production_id, assistant_id, parent_id, model_config=model_config
        )
        return stream.result()

    def update_turn(self, turn_id: str, patch: TurnPatch | dict) -> Turn:
        if isinstance(patch, dict):
            try:
                patch = TurnPatch.model_validate(patch)
            except SchemaValidationError as exc:
                raise ValidationError("Invalid turn patch.", details={"errors": exc.errors()}) from exc
        if not patch.model_fields_set:
            raise ValidationError("Patch is empty.")
        with self._lock:
            turn = self.get_turn(turn_id)
            if self.streaming.is_streaming and self.streaming.turn_id == turn_id:
                raise ConflictError(f"Turn {turn_id} is still streaming.")
            changes: dict[str, Any] = {}
            if "content" in patch.model_fields_set:
                if patch.content is None:
                    raise ValidationError("content cannot be null.")
                try:
                    changes["content"] = merge_content(turn.content, patch.content)
                except SchemaValidationError as exc:
                    raise ValidationError("Invalid content.", details={"errors": exc.errors()}) from exc
            if "assistant_id" in patch.model_fields_set:
                if not isinstance(turn, AssistantTurn):
                    raise ValidationError("assistant_id can only be set on assistant turns.")
                if not patch.assistant_id:
                    raise ValidationError("assistant_id cannot be empty.")
                changes["assistant_id"] = patch.assistant_id
            if "is_directive" in patch.model_fields_set:
                if not isinstance(turn, UserTurn):
                    raise ValidationError("is_directive can only be set on user turns.")
                if patch.is_directive is None:
                    raise ValidationError("is_directive cannot be null.")
                changes["is_directive"] = patch.is_directive
            persisted = self.repository.update_turn(turn_id, changes)
            self._turns[turn_id] = persisted
        logger.info("Updated turn %s (%s)", turn_id, ", ".join(sorted(changes)))
        return persisted

    def delete_turn(self, turn_id: str) -> None:
        with self._lock:
            turn = self.get_turn(turn_id)
            forest = self._forest(turn.production_id)
            doomed = navigator.collect_subtree(forest.index, turn_id)
            doomed_set = set(doomed)
            if self.streaming.is_streaming and self.streaming.turn_id in doomed_set:
                # the placeholder is only in memory; cancel and drop it first
                streaming_id = self.streaming.turn_id
                self.cancel_stream()
                self._discard_placeholder(streaming_id)
                self.streaming.clear()
                if streaming_id == turn_id:
                    return
                doomed = [item for item in doomed if item != streaming_id]
                doomed_set.discard(streaming_id)

            snapshot = [self._turns[item] for item in doomed]
            previous_active = forest.active
            for item in reversed(doomed):
                self._detach(forest, item)
            if forest.active in doomed_set:
                forest.active = turn.parent_id
            try:
                self.repository.delete_turn(turn_id)
            except Exception:
                for item in snapshot:
                    self._attach(forest, item)
                self._restore_sibling_order(forest, snapshot)
                forest.active = previous_active
                logger.exception("Deleting turn %s failed", turn_id)
                raise
        logger.info("Deleted turn %s and %d descendants", turn_id, len(doomed) - 1)

    def cancel_stream(self) -> None:
        with self._lock:
            stream = self._live_stream
            if stream is None:
                return
            logger.info("Cancelling stream for turn %s", stream.turn.id)
            stream.cancel()
            if not stream.started:
                # an unstarted generator never reaches its own cleanup
                stream.close()

    def reset_production(self, production_id: str) -> None:
        with self._lock:
            if self.streaming.is_streaming and self.streaming.production_id == production_id:
                self.cancel_stream()
                self._discard_placeholder(self.streaming.turn_id)
                self.streaming.clear()
            forest = self._forests.pop(production_id, None)
            if forest is None:
                return
            for turn_id in forest.parents:
                self._turns.pop(turn_id, None)

    # Streaming internals

    def _stream_events(
        self,
        stream: AssistantTurnStream,
        messages: list[ChatMessage],
        config: ModelConfig,
        tracker: GenerationTracker,
    ) -> Iterator[StreamEvent]:
        placeholder = stream.turn
        finalized = False
        error: str | None = None
        try:
            yield TurnStarted(placeholder)
            final: TurnContent | None = None
            events = self.client.stream_completion(
                messages, config, cancel_event=stream.cancel_event
            )
            try:
                for event in events:
                    if stream.cancel_event.is_set():
                        break
                    try:
                        tracker.apply(event)
                    except RuntimeError as exc:
                        raise LLMClientError(str(exc), reason="malformed") from exc
                    if isinstance(event, CompletionDone):
                        final = event.content
                    elif isinstance(event, (FieldUpdated, FieldCompleted)):
                        self._merge_partial(stream, tracker)
                    yield event
            finally:
                close = getattr(events, "close", None)
                if close is not None:
                    close()
            if final is None or stream.cancel_event.is_set():
                tracker.cancel()
                logger.info("Stream for turn %s cancelled before completion", placeholder.id)
                return
            turn = self._finalize(stream, final)
            finalized = True
            yield TurnCompleted(turn)
        except LLMClientError as exc:
            error = str(exc)
            tracker.fail(error)
            logger.warning("Completion for turn %s failed: %s", placeholder.id, exc)
            raise UpstreamError(error, reason=exc.reason) from exc
        except Exception as exc:
            error = str(exc)
            raise
        finally:
            with self._lock:
                if not finalized:
                    self._discard_placeholder(placeholder.id)
                if self.streaming.turn_id in (placeholder.id, None):
                    self.streaming.clear(error=error)
                if self._live_stream is stream:
                    self._live_stream = None

    def _merge_partial(self, stream: AssistantTurnStream, tracker: GenerationTracker) -> None:
        data = {name: value for name, value in tracker.snapshot().items() if name in CONTENT_FIELDS}
        if not isinstance(data.get("performance"), str):
            data["performance"] = ""
        try:
            content = TurnContent.model_validate(data)
        except SchemaValidationError:
            logger.debug("Partial content for %s not yet valid", stream.turn.id)
            return
        with self._lock:
            if stream.turn.id not in self._turns:
                return
            stream.turn = with_changes(stream.turn, content=content)
            self._turns[stream.turn.id] = stream.turn

    def _finalize(self, stream: AssistantTurnStream, content: TurnContent) -> AssistantTurn:
        with self._lock:
            if stream.turn.id not in self._turns:
                raise ConflictError(f"Turn {stream.turn.id} was removed while streaming.")
            forest = self._forest(stream.turn.production_id)
            turn = with_changes(stream.turn, content=content)
            persisted = self.repository.create_turn(turn)
            self._turns[turn.id] = persisted
            forest.active = turn.id
            stream.turn = persisted
        logger.info("Completed assistant turn %s", turn.id)
        return persisted

    def _abort_unstarted(self, stream: AssistantTurnStream) -> None:
        with self._lock:
            self._discard_placeholder(stream.turn.id)
            if self.streaming.turn_id == stream.turn.id:
                self.streaming.clear()
            if self._live_stream is stream:
                self._live_stream = None
            stream.tracker.cancel()

    def _discard_placeholder(self, turn_id: str | None) -> None:
        if turn_id is None or turn_id not in self._turns:
            return
        turn = self._turns.pop(turn_id)
        forest = self._forests.get(turn.production_id)
        if forest is None or turn_id not in forest.parents:
            return
        forest.detach(turn_id)
        if forest.active == turn_id:
            forest.active = turn.parent_id

    # Index helpers

    def _forest(self, production_id: str) -> _Forest:
        forest = self._forests.get(production_id)
        if forest is None:
            self.load(production_id)
            forest = self._forests[production_id]
        return forest

    def _attach(self, forest: _Forest, turn: Turn) -> None:
        forest.attach(turn)
        self._turns[turn.id] = turn

    def _detach(self, forest: _Forest, turn_id: str) -> None:
        forest.detach(turn_id)
        self._turns.pop(turn_id, None)

    def _walk(self, forest: _Forest) -> list[str]:
        return sorted(forest.parents, key=lambda turn_id: self._turns[turn_id].created_at)

    def _restore_sibling_order(self, forest: _Forest, turns: list[Turn]) -> None:
        parents = {turn.parent_id for turn in turns}
        for parent_id in parents:
            siblings = forest.children.get(parent_id)
            if siblings:
                siblings.sort(key=lambda turn_id: self._turns[turn_id].created_at)


class AssistantTurnStream:
    """Iterator over the events of one assistant turn generation.

    ``turn`` always holds the latest state of the turn being filled, and the
    persisted turn once the stream has completed.
    """

    def __init__(
        self,
        store: TurnStore,
        turn: AssistantTurn,
        messages: list[ChatMessage],
        config: ModelConfig,
        tracker: GenerationTracker,
        cancel_event: threading.Event,
    ) -> None:
        self.store = store
        self.turn = turn
        self.messages = messages
        self.tracker = tracker
        self.cancel_event = cancel_event
        self._events = store._stream_events(self, messages, config, tracker)
        self._started = False

    def __iter__(self) -> AssistantTurnStream:
        return self

    @property
    def started(self) -> bool:
        return self._started

    def __next__(self) -> StreamEvent:
        with self.store._lock:
            self._started = True
        return next(self._events)

    def __enter__(self) -> AssistantTurnStream:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def cancel(self) -> None:
        self.cancel_event.set()

    def close(self) -> None:
        with self.store._lock:
            unstarted = not self._started
            self._started = True
            if unstarted:
                self.store._abort_unstarted(self)
        self._events.close()

    def result(self) -> AssistantTurn:
        for _ in self:
            pass
        if self.tracker.status != "done":
            raise ConflictError(f"Turn {self.turn.id} was cancelled before completion.")
        return self.turn
