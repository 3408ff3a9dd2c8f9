"""Incremental parsing of a JSON object that arrives in fragments.

A top-level field counts as complete once the scanner has read past its value
to the ``,`` or ``}`` that ends it at object depth 1. From then on the value is
frozen: a repeated key later in the stream is ignored. While a value is still
open, a best-effort reading of it is reported as ``FieldUpdated``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Union

logger = logging.getLogger(__name__)

_MISSING = object()


class PartialJSONError(ValueError):
    pass


@dataclass(frozen=True)
class FieldStarted:
    name: str


@dataclass(frozen=True)
class FieldUpdated:
    name: str
    value: Any


@dataclass(frozen=True)
class FieldCompleted:
    name: str
    value: Any


FieldEvent = Union[FieldStarted, FieldUpdated, FieldCompleted]


class PartialObjectParser:
    def __init__(self) -> None:
        self._text = ""
        self._pos = 0
        self._depth = 0
        self._in_string = False
        self._escape = False
        self._started = False
        self._closed = False
        self._expect = "key"
        self._key_start = 0
        self._key: str | None = None
        self._value_start = 0
        self._partials: dict[str, Any] = {}
        self.started_fields: list[str] = []
        self.completed: dict[str, Any] = {}

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, chunk: str) -> list[FieldEvent]:
        events: list[FieldEvent] = []
        self._text += chunk
        while self._pos < len(self._text) and not self._closed:
            self._step(self._text[self._pos], events)
            self._pos += 1
        update = self._partial_update()
        if update is not None:
            events.append(update)
        return events

    def snapshot(self) -> dict[str, Any]:
        data = dict(self._partials)
        data.update(self.completed)
        return data

    def finish(self) -> dict[str, Any]:
        if not self._started:
            raise PartialJSONError("No JSON object found in response.")
        if not self._closed:
            raise PartialJSONError("Response ended before the JSON object was closed.")
        return dict(self.completed)

    def _step(self, ch: str, events: list[FieldEvent]) -> None:
        if not self._started:
            if ch == "{":
                self._started = True
                self._depth = 1
            return

        if self._in_string:
            if self._escape:
                self._escape = False
            elif ch == "\\":
                self._escape = True
            elif ch == '"':
                self._in_string = False
                if self._depth == 1 and self._expect == "key_string":
                    self._key = json.loads(self._text[self._key_start : self._pos + 1])
                    self._expect = "colon"
            return

        if ch == '"':
            self._in_string = True
            if self._depth == 1 and self._expect == "key":
                self._key_start = self._pos
                self._expect = "key_string"
            return

        if self._depth == 1:
            if ch == ":" and self._expect == "colon":
                self._value_start = self._pos + 1
                self._expect = "value"
                self._start_field(events)
                return
            if ch == "," and self._expect == "value":
                self._complete_field(events)
                self._expect = "key"
                return
            if ch == "}":
                if self._expect == "value":
                    self._complete_field(events)
                self._depth = 0
                self._closed = True
                return

        if ch in "{[":
            self._depth += 1
        elif ch in "}]":
            self._depth -= 1

    def _start_field(self, events: list[FieldEvent]) -> None:
        name = self._key
        if name is None or name in self.completed or name in self.started_fields:
            return
        self.started_fields.append(name)
        events.append(FieldStarted(name))

    def _complete_field(self, events: list[FieldEvent]) -> None:
        name = self._key
        raw = self._text[self._value_start : self._pos].strip()
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PartialJSONError(f"Invalid value for field {name!r}: {exc}") from exc
        self._key = None
        if name is None:
            return
        if name in self.completed:
            logger.warning("Ignoring repeated field %r in streamed object", name)
            return
        self.completed[name] = value
        self._partials.pop(name, None)
        events.append(FieldCompleted(name, value))

    def _partial_update(self) -> FieldUpdated | None:
        if self._closed or self._expect != "value" or self._key is None:
            return None
        name = self._key
        if name in self.completed:
            return None
        value = loads_partial(self._text[self._value_start :])
        if value is _MISSING or self._partials.get(name, _MISSING) == value:
            return None
        self._partials[name] = value
        return FieldUpdated(name, value)


def loads_partial(fragment: str) -> Any:
    """Parse the longest readable prefix of an unfinished JSON value.

    Returns the module's missing sentinel when nothing usable has arrived yet.
    """
    text = fragment.strip()
    if not text:
        return _MISSING

    stack: list[str] = []
    commas: list[tuple[int, tuple[str, ...]]] = []
    in_string = False
    escape = False
    for index, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(ch)
        elif ch in "}]":
            if stack:
                stack.pop()
        elif ch == ",":
            commas.append((index, tuple(stack)))

    head = text
    if in_string:
        if escape:
            head = head[:-1]
        head += '"'
    value = _try_close(head, stack)
    if value is not _MISSING:
        return value
    for index, snapshot in reversed(commas):
        value = _try_close(text[:index], list(snapshot))
        if value is not _MISSING:
            return value
    return _MISSING


def is_missing(value: Any) -> bool:
    return value is _MISSING


def _try_close(head: str, stack: list[str]) -> Any:
    closers = "".join("}" if opener == "{" else "]" for opener in reversed(stack))
    try:
        return json.loads(head.rstrip() + closers)
    except json.JSONDecodeError:
        return _MISSING
