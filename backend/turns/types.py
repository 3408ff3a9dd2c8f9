from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, ClassVar, Union

from llm.schemas import TurnContent

DEFAULT_SENDER_NAME = "User"


def new_turn_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UserTurn:
    role: ClassVar[str] = "user"

    id: str
    production_id: str
    parent_id: str | None
    content: TurnContent
    receiving_assistant_id: str
    sending_persona_id: str | None = None
    sender_name: str = DEFAULT_SENDER_NAME
    is_directive: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AssistantTurn:
    role: ClassVar[str] = "assistant"

    id: str
    production_id: str
    parent_id: str | None
    content: TurnContent
    assistant_id: str
    created_at: datetime = field(default_factory=utcnow)


Turn = Union[UserTurn, AssistantTurn]


@dataclass(frozen=True)
class UserTurnInput:
    production_id: str
    performance: str
    receiving_assistant_id: str | None
    sending_persona_id: str | None = None
    sender_name: str | None = None
    is_directive: bool = False


def with_changes(turn: Turn, **changes: Any) -> Turn:
    return replace(turn, **changes)


def turn_to_record(turn: Turn) -> dict[str, Any]:
    record: dict[str, Any] = {
        "id": turn.id,
        "production_id": turn.production_id,
        "parent_id": turn.parent_id,
        "role": turn.role,
        "content": turn.content.model_dump(exclude_none=True),
        "created_at": turn.created_at.isoformat(),
    }
    if isinstance(turn, UserTurn):
        record.update(
            {
                "receiving_assistant_id": turn.receiving_assistant_id,
                "sending_persona_id": turn.sending_persona_id,
                "sender_name": turn.sender_name,
                "is_directive": turn.is_directive,
            }
        )
    elif isinstance(turn, AssistantTurn):
        record["assistant_id"] = turn.assistant_id
    else:
        raise TypeError(f"Unsupported turn type: {type(turn).__name__}")
    return record


def turn_from_record(record: dict[str, Any]) -> Turn:
    role = record.get("role")
    created_at = record.get("created_at")
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at)
    if created_at is None:
        created_at = utcnow()
    elif created_at.tzinfo is None:
        # SQLite hands timestamps back without their zone
        created_at = created_at.replace(tzinfo=timezone.utc)
    content = record.get("content")
    if not isinstance(content, TurnContent):
        content = TurnContent.model_validate(content or {})
    common = {
        "id": record["id"],
        "production_id": record["production_id"],
        "parent_id": record.get("parent_id"),
        "content": content,
        "created_at": created_at,
    }
    if role == "user":
        receiving = record.get("receiving_assistant_id")
        if not receiving:
            raise ValueError(f"User turn {record['id']} has no receiving assistant.")
        return UserTurn(
            **common,
            receiving_assistant_id=receiving,
            sending_persona_id=record.get("sending_persona_id"),
            sender_name=record.get("sender_name") or DEFAULT_SENDER_NAME,
            is_directive=bool(record.get("is_directive", False)),
        )
    if role == "assistant":
        assistant_id = record.get("assistant_id")
        if not assistant_id:
            raise ValueError(f"Assistant turn {record['id']} has no assistant.")
        return AssistantTurn(**common, assistant_id=assistant_id)
    raise ValueError(f"Unknown turn role: {role!r}")
