import json
import logging
import os
from typing import Any, Iterator, Literal

from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from db import check_db_connection, create_schema
from llm.client import CompletionClient, CompletionDone, LLMClientError
from llm.partial_json import FieldCompleted, FieldStarted, FieldUpdated
from llm.schemas import ModelConfig, TurnPatch
from turns.errors import (
    ConflictError,
    NotFoundError,
    TurnEngineError,
    UpstreamError,
    ValidationError,
)
from turns.persistence import SqlTurnRepository
from turns.store import AssistantTurnStream, TurnStore
from turns.streaming import TurnCompleted, TurnStarted
from turns.types import UserTurnInput, turn_to_record

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    UpstreamError: 502,
}

_store: TurnStore | None = None


def get_store() -> TurnStore:
    global _store
    if _store is None:
        if os.getenv("DB_CREATE_SCHEMA", "").lower() == "true":
            create_schema()
        _store = TurnStore(
            SqlTurnRepository(),
            CompletionClient(),
            model_config=ModelConfig.from_env(),
        )
    return _store


def _http_error(exc: TurnEngineError) -> HTTPException:
    status = 500
    for kind, code in ERROR_STATUS.items():
        if isinstance(exc, kind):
            status = code
            break
    detail: dict[str, Any] = {"code": exc.code, "message": str(exc)}
    if isinstance(exc, UpstreamError):
        detail["reason"] = exc.reason
    if exc.details:
        detail["details"] = exc.details
    return HTTPException(status_code=status, detail=detail)


def _event_payload(event: Any) -> dict | None:
    if isinstance(event, TurnStarted):
        return {"event": "turn_started", "turn": turn_to_record(event.turn)}
    if isinstance(event, FieldStarted):
        return {"event": "field_started", "field": event.name}
    if isinstance(event, FieldUpdated):
        return {"event": "field_updated", "field": event.name, "value": event.value}
    if isinstance(event, FieldCompleted):
        return {"event": "field_completed", "field": event.name, "value": event.value}
    if isinstance(event, TurnCompleted):
        return {"event": "turn_completed", "turn": turn_to_record(event.turn)}
    if isinstance(event, CompletionDone):
        return None
    raise TypeError(f"Unsupported stream event: {type(event).__name__}")


def _ndjson_events(stream: AssistantTurnStream) -> Iterator[str]:
    try:
        for event in stream:
            payload = _event_payload(event)
            if payload is not None:
                yield json.dumps(payload) + "\n"
    except TurnEngineError as exc:
        error: dict[str, Any] = {"event": "error", "code": exc.code, "message": str(exc)}
        if isinstance(exc, UpstreamError):
            error["reason"] = exc.reason
        yield json.dumps(error) + "\n"
    finally:
        stream.close()


app = FastAPI(
    title="turn-engine API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


@app.get("/health")
def health() -> dict:
    try:
        check_db_connection()
    except Exception as exc:
        raise HTTPException(status_code=503, detail="Database unavailable") from exc
    return {"status": "ok"}


class UserTurnRequest(BaseModel):
    performance: str
    receiving_assistant_id: str | None = None
    sending_persona_id: str | None = None
    sender_name: str | None = None
    is_directive: bool = False


class AssistantTurnRequest(BaseModel):
    assistant_id: str
    parent_id: str | None = None
    model: ModelConfig | None = None


class RegenerateRequest(BaseModel):
    assistant_id: str | None = None
    model: ModelConfig | None = None


class ActiveTurnRequest(BaseModel):
    turn_id: str | None = None


class NavigateRequest(BaseModel):
    turn_id: str
    direction: Literal["back", "forward"]


@app.get("/productions/{production_id}/turns")
def list_turns(production_id: str) -> dict:
    store = get_store()
    turns = store.get_production_turns(production_id)
    return {
        "production_id": production_id,
        "turns": [turn_to_record(turn) for turn in turns],
        "active_turn_id": store.get_active_turn(production_id),
        "streaming": store.streaming.to_dict(),
    }


@app.post("/productions/{production_id}/reload")
def reload_turns(production_id: str) -> dict:
    store = get_store()
    try:
        turns = store.load(production_id)
    except TurnEngineError as exc:
        raise _http_error(exc) from exc
    return {"production_id": production_id, "count": len(turns)}


@app.get("/productions/{production_id}/children")
def list_children(production_id: str, parent_id: str | None = None) -> dict:
    store = get_store()
    try:
        children = store.get_children(production_id, parent_id)
    except TurnEngineError as exc:
        raise _http_error(exc) from exc
    return {"parent_id": parent_id, "children": children}


@app.get("/productions/{production_id}/active_path")
def active_path(production_id: str) -> dict:
    store = get_store()
    path = store.get_active_path(production_id)
    return {
        "active_turn_id": store.get_active_turn(production_id),
        "turns": [turn_to_record(turn) for turn in path],
    }


@app.get("/productions/{production_id}/active")
def get_active(production_id: str) -> dict:
    return {"active_turn_id": get_store().get_active_turn(production_id)}


@app.put("/productions/{production_id}/active")
def put_active(production_id: str, payload: ActiveTurnRequest) -> dict:
    store = get_store()
    try:
        store.set_active_turn(production_id, payload.turn_id)
    except TurnEngineError as exc:
        raise _http_error(exc) from exc
    return {"active_turn_id": store.get_active_turn(production_id)}


@app.post("/productions/{production_id}/navigate")
def navigate(production_id: str, payload: NavigateRequest) -> dict:
    store = get_store()
    step = -1 if payload.direction == "back" else 1
    try:
        active = store.navigate_sibling(production_id, payload.turn_id, step)
        siblings = store.get_siblings(payload.turn_id)
    except TurnEngineError as exc:
        raise _http_error(exc) from exc
    return {"active_turn_id": active, "siblings": siblings}


@app.post("/productions/{production_id}/turns")
def create_user_turn(production_id: str, payload: UserTurnRequest) -> dict:
    store = get_store()
    try:
        turn = store.insert_user_turn(
            UserTurnInput(
                production_id=production_id,
                performance=payload.performance,
                receiving_assistant_id=payload.receiving_assistant_id,
                sending_persona_id=payload.sending_persona_id,
                sender_name=payload.sender_name,
                is_directive=payload.is_directive,
            )
        )
    except TurnEngineError as exc:
        raise _http_error(exc) from exc
    return turn_to_record(turn)


@app.post("/productions/{production_id}/assistant_turns")
def create_assistant_turn(production_id: str, payload: AssistantTurnRequest) -> StreamingResponse:
    store = get_store()
    parent_id = payload.parent_id
    if "parent_id" not in payload.model_fields_set:
        parent_id = store.get_active_turn(production_id)
    try:
        stream = store.insert_assistant_turn(
            production_id,
            payload.assistant_id,
            parent_id,
            model_config=payload.model,
        )
    except TurnEngineError as exc:
        raise _http_error(exc) from exc
    return StreamingResponse(_ndjson_events(stream), media_type="application/x-ndjson")


@app.post("/turns/{turn_id}/regenerate")
def regenerate_turn(turn_id: str, payload: RegenerateRequest | None = Body(default=None)) -> StreamingResponse:
    data = payload or RegenerateRequest()
    try:
        stream = get_store().regenerate_turn(turn_id, data.assistant_id, model_config=data.model)
    except TurnEngineError as exc:
        raise _http_error(exc) from exc
    return StreamingResponse(_ndjson_events(stream), media_type="application/x-ndjson")


@app.patch("/turns/{turn_id}")
def patch_turn(turn_id: str, payload: TurnPatch) -> dict:
    try:
        turn = get_store().update_turn(turn_id, payload)
    except TurnEngineError as exc:
        raise _http_error(exc) from exc
    return turn_to_record(turn)


@app.delete("/turns/{turn_id}")
def delete_turn(turn_id: str) -> dict:
    store = get_store()
    try:
        production_id = store.get_turn(turn_id).production_id
        store.delete_turn(turn_id)
    except TurnEngineError as exc:
        raise _http_error(exc) from exc
    return {"deleted": turn_id, "active_turn_id": store.get_active_turn(production_id)}


@app.get("/turns/{turn_id}/siblings")
def list_siblings(turn_id: str) -> dict:
    try:
        siblings = get_store().get_siblings(turn_id)
    except TurnEngineError as exc:
        raise _http_error(exc) from exc
    return {"turn_id": turn_id, "siblings": siblings}


@app.get("/streaming")
def streaming_state() -> dict:
    return get_store().streaming.to_dict()


@app.post("/streaming/cancel")
def cancel_streaming() -> dict:
    store = get_store()
    store.cancel_stream()
    return store.streaming.to_dict()


@app.get("/productions/{production_id}/evolutions/{assistant_id}")
def persona_evolutions(production_id: str, assistant_id: str, active_branch_only: bool = False) -> list[dict]:
    return get_store().get_persona_evolutions(
        production_id,
        assistant_id,
        active_branch_only=active_branch_only,
    )


@app.post("/models/test")
def test_model(payload: ModelConfig) -> dict:
    try:
        return get_store().client.test_connection(payload)
    except LLMClientError as exc:
        raise _http_error(UpstreamError(str(exc), reason=exc.reason)) from exc
