from __future__ import annotations

import os
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

CONTENT_FIELDS = ("performance", "vectors", "evolution", "meta")


class Vectors(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    location: str | None = None
    posture: str | None = None
    direction: str | None = None
    momentum: str | None = None


class Evolution(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    self_perception: str | None = None
    private_knowledge: str | None = None
    note_to_future_self: str | None = None


class TurnContent(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    performance: str
    vectors: Vectors | None = None
    evolution: Evolution | None = None
    meta: str | None = None


class ContentPatch(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    performance: str | None = None
    vectors: Vectors | None = None
    evolution: Evolution | None = None
    meta: str | None = None


class TurnPatch(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    content: ContentPatch | None = None
    assistant_id: str | None = None
    is_directive: bool | None = None


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    role: Literal["system", "user", "assistant"]
    content: str


class ModelConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    model_id: str
    api_endpoint: str
    api_key: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    timeout: int = Field(default=30, gt=0)

    @classmethod
    def from_env(cls) -> ModelConfig:
        return cls(
            model_id=os.getenv("LLM_MODEL") or "llama-3.2-1b-instruct",
            api_endpoint=(os.getenv("LLM_API_ENDPOINT") or "http://localhost:1234/v1").rstrip("/"),
            api_key=os.getenv("LLM_API_KEY") or None,
            timeout=int(os.getenv("LLM_TIMEOUT", "30")),
        )


def merge_content(content: TurnContent, patch: ContentPatch) -> TurnContent:
    """Apply a partial content edit; nested vectors/evolution merge per key."""
    data = content.model_dump()
    for name in patch.model_fields_set:
        value = getattr(patch, name)
        if isinstance(value, BaseModel):
            current = data.get(name) or {}
            current.update(value.model_dump(exclude_unset=True))
            data[name] = current
        else:
            data[name] = value
    if data.get("performance") is None:
        data["performance"] = content.performance
    return TurnContent.model_validate(data)


def response_format() -> dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "response",
            "schema": TurnContent.model_json_schema(),
            "strict": False,
        },
    }
