from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping, Union

import requests
from pydantic import ValidationError as SchemaValidationError

from llm.partial_json import (
    FieldCompleted,
    FieldStarted,
    FieldUpdated,
    PartialJSONError,
    PartialObjectParser,
)
from llm.schemas import ChatMessage, ModelConfig, TurnContent, response_format
from turns.types import AssistantTurn, Turn, UserTurn

logger = logging.getLogger(__name__)

DIRECTIVE_MARKER = "[DIRECTIVE]"

DEFAULT_PREAMBLE = (
    "You are performing as a character in a collaborative production. "
    "Stay in character and respond only with your own next turn. "
    "Messages marked [DIRECTIVE] are out-of-character instructions from the director; "
    "follow them without acknowledging them in the performance."
)

DEFAULT_CLOSING = (
    "Reply with a JSON object only. "
    "Schema: {"
    '"performance": "string", '
    '"vectors": {"location": "string", "posture": "string", '
    '"direction": "string", "momentum": "string"} | null, '
    '"evolution": {"self_perception": "string", "private_knowledge": "string", '
    '"note_to_future_self": "string"} | null, '
    '"meta": "string" | null'
    "}. "
    "performance is required. No markdown, no extra keys."
)


class LLMClientError(RuntimeError):
    def __init__(self, message: str, *, reason: str = "http") -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class PromptFrame:
    preamble: str = DEFAULT_PREAMBLE
    closing: str = DEFAULT_CLOSING


@dataclass(frozen=True)
class CompletionDone:
    content: TurnContent
    raw: str


CompletionEvent = Union[FieldStarted, FieldUpdated, FieldCompleted, CompletionDone]


class CompletionClient:
    def __init__(self, *, http: requests.Session | None = None) -> None:
        self.http = http or requests.Session()

    def linearize(
        self,
        turns: Mapping[str, Turn],
        leaf_turn_id: str | None,
        frame: PromptFrame | None = None,
    ) -> list[ChatMessage]:
        return linearize_branch(turns, leaf_turn_id, frame or PromptFrame())

    def stream_completion(
        self,
        messages: list[ChatMessage],
        model_config: ModelConfig,
        *,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[CompletionEvent]:
        deltas = self._iter_content_deltas(messages, model_config, cancel_event)
        return _events_from_deltas(deltas, cancel_event)

    def complete(self, messages: list[ChatMessage], model_config: ModelConfig) -> TurnContent:
        payload = _chat_payload(messages, model_config, stream=False)
        response = self._post(model_config, payload, stream=False)
        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise LLMClientError("Invalid response from completion endpoint.", reason="malformed") from exc
        return _parse_turn_content(content)

    def test_connection(self, model_config: ModelConfig) -> dict[str, Any]:
        payload = {
            "model": model_config.model_id,
            "messages": [
                {
                    "role": "system",
                    "content": "You are a helpful assistant. Please respond with a brief greeting.",
                },
                {
                    "role": "user",
                    "content": "Hello! Please respond with a simple greeting to confirm you are working.",
                },
            ],
            "temperature": model_config.temperature if model_config.temperature is not None else 0.7,
            "max_tokens": 50,
            "stream": False,
        }
        response = self._post(model_config, payload, stream=False)
        try:
            reply = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise LLMClientError("Invalid response from completion endpoint.", reason="malformed") from exc
        return {"ok": True, "model": model_config.model_id, "reply": reply}

    def _iter_content_deltas(
        self,
        messages: list[ChatMessage],
        model_config: ModelConfig,
        cancel_event: threading.Event | None,
    ) -> Iterator[str]:
        payload = _chat_payload(messages, model_config, stream=True)
        response = self._post(model_config, payload, stream=True)
        try:
            for line in response.iter_lines():
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Completion stream cancelled by caller")
                    return
                delta = _parse_sse_line(line)
                if delta is None:
                    continue
                if delta is _DONE:
                    return
                yield delta
        except requests.Timeout as exc:
            raise LLMClientError("Completion stream timed out.", reason="timeout") from exc
        except requests.RequestException as exc:
            raise LLMClientError(f"Completion stream failed: {exc}", reason="unreachable") from exc
        finally:
            response.close()

    def _post(self, model_config: ModelConfig, payload: dict, *, stream: bool) -> requests.Response:
        url = f"{model_config.api_endpoint.rstrip('/')}/chat/completions"
        headers = {"Content-Type": "application/json"}
        if model_config.api_key:
            headers["Authorization"] = f"Bearer {model_config.api_key}"
        logger.debug("POST %s model=%s stream=%s", url, model_config.model_id, stream)
        try:
            response = self.http.post(
                url,
                json=payload,
                headers=headers,
                stream=stream,
                timeout=model_config.timeout,
            )
        except requests.Timeout as exc:
            raise LLMClientError("Completion request timed out.", reason="timeout") from exc
        except requests.ConnectionError as exc:
            raise LLMClientError(
                f"Completion endpoint unreachable: {model_config.api_endpoint}",
                reason="unreachable",
            ) from exc
        if response.status_code in (401, 403):
            response.close()
            raise LLMClientError("Completion endpoint rejected the credentials.", reason="auth")
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            response.close()
            raise LLMClientError(
                f"Completion endpoint returned HTTP {response.status_code}.",
                reason="http",
            ) from exc
        return response


def linearize_branch(
    turns: Mapping[str, Turn],
    leaf_turn_id: str | None,
    frame: PromptFrame,
) -> list[ChatMessage]:
    branch: list[Turn] = []
    current = leaf_turn_id
    while current is not None:
        turn = turns.get(current)
        if turn is None:
            raise KeyError(current)
        branch.append(turn)
        current = turn.parent_id
    branch.reverse()

    messages = [ChatMessage(role="system", content=frame.preamble)]
    messages.extend(_turn_message(turn) for turn in branch)
    messages.append(ChatMessage(role="system", content=frame.closing))
    return messages


def _turn_message(turn: Turn) -> ChatMessage:
    if isinstance(turn, UserTurn):
        if turn.is_directive:
            text = f"{DIRECTIVE_MARKER} {turn.content.performance}"
        else:
            text = f"{turn.sender_name}: {turn.content.performance}"
        return ChatMessage(role="user", content=text)
    if isinstance(turn, AssistantTurn):
        return ChatMessage(
            role="assistant",
            content=turn.content.model_dump_json(exclude_none=True),
        )
    raise TypeError(f"Unsupported turn type: {type(turn).__name__}")


def _chat_payload(messages: list[ChatMessage], model_config: ModelConfig, *, stream: bool) -> dict:
    payload: dict[str, Any] = {
        "model": model_config.model_id,
        "messages": [message.model_dump() for message in messages],
        "response_format": response_format(),
        "stream": stream,
    }
    if model_config.temperature is not None:
        payload["temperature"] = model_config.temperature
    return payload


_DONE = object()


def _parse_sse_line(line: str | bytes | None) -> Any:
    if not line:
        return None
    if isinstance(line, bytes):
        # SSE is UTF-8 whatever charset the response headers claim
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise LLMClientError("Stream chunk is not valid UTF-8.", reason="malformed") from exc
    if not line.startswith("data:"):
        return None
    data = line[len("data:") :].strip()
    if data == "[DONE]":
        return _DONE
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError as exc:
        raise LLMClientError("Malformed stream chunk from completion endpoint.", reason="malformed") from exc
    if isinstance(chunk, dict) and chunk.get("error"):
        error = chunk["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise LLMClientError(f"Completion endpoint error: {message}", reason="http")
    try:
        delta = chunk["choices"][0].get("delta") or {}
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    content = delta.get("content")
    return content or None


def _events_from_deltas(
    deltas: Iterable[str],
    cancel_event: threading.Event | None = None,
) -> Iterator[CompletionEvent]:
    parser = PartialObjectParser()
    raw_parts: list[str] = []
    try:
        for delta in deltas:
            raw_parts.append(delta)
            yield from parser.feed(delta)
    except PartialJSONError as exc:
        raise LLMClientError(str(exc), reason="malformed") from exc
    finally:
        close = getattr(deltas, "close", None)
        if close is not None:
            close()
    if cancel_event is not None and cancel_event.is_set():
        return
    raw = "".join(raw_parts)
    try:
        data = parser.finish()
    except PartialJSONError as exc:
        raise LLMClientError(str(exc), reason="malformed") from exc
    try:
        content = TurnContent.model_validate(data)
    except SchemaValidationError as exc:
        raise LLMClientError(f"Response does not match the turn schema: {exc}", reason="malformed") from exc
    yield CompletionDone(content=content, raw=raw)


def _parse_turn_content(content: str) -> TurnContent:
    payload = _extract_json(content)
    try:
        return TurnContent.model_validate(payload)
    except SchemaValidationError as exc:
        raise LLMClientError(f"Response does not match the turn schema: {exc}", reason="malformed") from exc


def _extract_json(content: str) -> dict[str, Any]:
    try:
        data = json.loads(content)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    start = content.find("{")
    end = content.rfind("}")
    if start >= 0 and end > start:
        try:
            data = json.loads(content[start : end + 1])
        except json.JSONDecodeError as exc:
            raise LLMClientError("Failed to parse JSON response.", reason="malformed") from exc
        if isinstance(data, dict):
            return data
    raise LLMClientError("Failed to parse JSON response.", reason="malformed")
