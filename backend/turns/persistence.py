from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Protocol

from sqlalchemy import delete
from sqlalchemy.orm import Session

from models import Turn as TurnModel
from turns.navigator import ForestIndex, collect_subtree
from turns.types import Turn, turn_from_record, turn_to_record, with_changes

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"content", "assistant_id", "is_directive"}


class TurnRepository(Protocol):
    def create_turn(self, turn: Turn) -> Turn: ...

    def update_turn(self, turn_id: str, patch: dict[str, Any]) -> Turn: ...

    def delete_turn(self, turn_id: str) -> None: ...

    def list_turns(self, production_id: str) -> list[Turn]: ...


class InMemoryTurnRepository:
    def __init__(self) -> None:
        self.turns: dict[str, Turn] = {}

    def create_turn(self, turn: Turn) -> Turn:
        if turn.id in self.turns:
            raise KeyError(f"Turn {turn.id} already exists.")
        if turn.parent_id is not None and turn.parent_id not in self.turns:
            raise KeyError(f"Parent turn {turn.parent_id} does not exist.")
        self.turns[turn.id] = turn
        return turn

    def update_turn(self, turn_id: str, patch: dict[str, Any]) -> Turn:
        turn = self.turns.get(turn_id)
        if turn is None:
            raise KeyError(turn_id)
        _check_patch_fields(patch)
        updated = with_changes(turn, **copy.deepcopy(patch))
        self.turns[turn_id] = updated
        return updated

    def delete_turn(self, turn_id: str) -> None:
        turn = self.turns.get(turn_id)
        if turn is None:
            raise KeyError(turn_id)
        index = ForestIndex.from_turns(self.list_turns(turn.production_id))
        for doomed in collect_subtree(index, turn_id):
            self.turns.pop(doomed, None)

    def list_turns(self, production_id: str) -> list[Turn]:
        turns = [turn for turn in self.turns.values() if turn.production_id == production_id]
        return sorted(turns, key=lambda turn: turn.created_at)


class SqlTurnRepository:
    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        if session_factory is None:
            from db import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory

    def create_turn(self, turn: Turn) -> Turn:
        with self.session_factory() as db:
            row = TurnModel(**_record_to_columns(turn_to_record(turn)))
            row.created_at = turn.created_at
            db.add(row)
            db.commit()
            db.refresh(row)
            return _row_to_turn(row)

    def update_turn(self, turn_id: str, patch: dict[str, Any]) -> Turn:
        _check_patch_fields(patch)
        with self.session_factory() as db:
            row = db.get(TurnModel, turn_id)
            if row is None:
                raise KeyError(turn_id)
            if "content" in patch:
                row.content_json = patch["content"].model_dump(exclude_none=True)
            if "assistant_id" in patch:
                row.assistant_id = patch["assistant_id"]
            if "is_directive" in patch:
                row.is_directive = bool(patch["is_directive"])
            db.commit()
            db.refresh(row)
            return _row_to_turn(row)

    def delete_turn(self, turn_id: str) -> None:
        with self.session_factory() as db:
            row = db.get(TurnModel, turn_id)
            if row is None:
                raise KeyError(turn_id)
            pairs = (
                db.query(TurnModel.id, TurnModel.parent_id)
                .filter(TurnModel.production_id == row.production_id)
                .order_by(TurnModel.created_at.asc())
                .all()
            )
            index = ForestIndex.from_turns(_Pair(pair_id, parent) for pair_id, parent in pairs)
            doomed = collect_subtree(index, turn_id)
            # children first so backends without ON DELETE CASCADE stay consistent
            for doomed_id in reversed(doomed):
                db.execute(delete(TurnModel).where(TurnModel.id == doomed_id))
            db.commit()
            logger.debug("Deleted %d turns under %s", len(doomed), turn_id)

    def list_turns(self, production_id: str) -> list[Turn]:
        with self.session_factory() as db:
            rows = (
                db.query(TurnModel)
                .filter(TurnModel.production_id == production_id)
                .order_by(TurnModel.created_at.asc())
                .all()
            )
            return [_row_to_turn(row) for row in rows]


class _Pair:
    def __init__(self, turn_id: str, parent_id: str | None) -> None:
        self.id = turn_id
        self.parent_id = parent_id


def _check_patch_fields(patch: dict[str, Any]) -> None:
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")


def _record_to_columns(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": record["id"],
        "production_id": record["production_id"],
        "parent_id": record["parent_id"],
        "role": record["role"],
        "assistant_id": record.get("assistant_id"),
        "receiving_assistant_id": record.get("receiving_assistant_id"),
        "sending_persona_id": record.get("sending_persona_id"),
        "sender_name": record.get("sender_name"),
        "is_directive": bool(record.get("is_directive", False)),
        "content_json": record["content"],
    }


def _row_to_turn(row: Any) -> Turn:
    return turn_from_record(
        {
            "id": row.id,
            "production_id": row.production_id,
            "parent_id": row.parent_id,
            "role": row.role,
            "assistant_id": row.assistant_id,
            "receiving_assistant_id": row.receiving_assistant_id,
            "sending_persona_id": row.sending_persona_id,
            "sender_name": row.sender_name,
            "is_directive": row.is_directive,
            "content": row.content_json,
            "created_at": row.created_at,
        }
    )
