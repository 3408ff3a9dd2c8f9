"""Tree walks over a production's turn forest.

Every function here is pure: it reads a ``ForestIndex`` (parent pointers plus a
children index in insertion order) and never mutates it. The Turn Store and
the HTTP layer share these to decide which path through the forest is shown.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Protocol, Sequence


class _Node(Protocol):
    id: str
    parent_id: str | None


@dataclass(frozen=True)
class ForestIndex:
    parents: Mapping[str, str | None] = field(default_factory=dict)
    children: Mapping[str | None, Sequence[str]] = field(default_factory=dict)

    @classmethod
    def from_turns(cls, turns: Iterable[_Node]) -> ForestIndex:
        """Build an index from turns already sorted by creation time."""
        parents: dict[str, str | None] = {}
        children: dict[str | None, list[str]] = {}
        for turn in turns:
            parents[turn.id] = turn.parent_id
            children.setdefault(turn.parent_id, []).append(turn.id)
        return cls(parents=parents, children=children)

    def __contains__(self, turn_id: object) -> bool:
        return turn_id in self.parents


def get_children(index: ForestIndex, parent_id: str | None) -> list[str]:
    return list(index.children.get(parent_id, ()))


def get_siblings(index: ForestIndex, turn_id: str) -> list[str]:
    if turn_id not in index:
        return []
    return get_children(index, index.parents[turn_id])


def get_path(index: ForestIndex, leaf_turn_id: str | None) -> list[str]:
    """Root-to-leaf ids ending at ``leaf_turn_id``."""
    path: list[str] = []
    seen: set[str] = set()
    current = leaf_turn_id
    while current is not None:
        if current in seen:
            raise RuntimeError(f"Cycle detected at turn {current}.")
        if current not in index:
            raise KeyError(current)
        seen.add(current)
        path.append(current)
        current = index.parents[current]
    path.reverse()
    return path


def get_ancestor_on_active_path(
    index: ForestIndex,
    active_turn_id: str | None,
    sibling_candidate_ids: Iterable[str],
) -> str | None:
    candidates = set(sibling_candidate_ids)
    current = active_turn_id
    while current is not None and current in index:
        if current in candidates:
            return current
        current = index.parents[current]
    return None


def get_latest_descendant(index: ForestIndex, turn_id: str) -> str:
    current = turn_id
    while True:
        children = index.children.get(current)
        if not children:
            return current
        current = children[-1]


def collect_subtree(index: ForestIndex, turn_id: str) -> list[str]:
    """Ids of ``turn_id`` and all of its descendants, parents before children."""
    collected: list[str] = []
    stack = [turn_id]
    while stack:
        current = stack.pop()
        collected.append(current)
        stack.extend(reversed(index.children.get(current, ())))
    return collected


def get_sibling_position(
    index: ForestIndex,
    active_turn_id: str | None,
    sibling_ids: Sequence[str],
) -> int | None:
    ancestor = get_ancestor_on_active_path(index, active_turn_id, sibling_ids)
    if ancestor is None:
        return None
    return list(sibling_ids).index(ancestor)


def navigate_siblings(
    index: ForestIndex,
    active_turn_id: str | None,
    sibling_ids: Sequence[str],
    step: int,
) -> str | None:
    """Latest descendant of the sibling ``step`` places away from the active one.

    Returns None when the active branch does not pass through this sibling
    group or the move would leave the group.
    """
    position = get_sibling_position(index, active_turn_id, sibling_ids)
    if position is None:
        return None
    target = position + step
    if target < 0 or target >= len(sibling_ids):
        return None
    return get_latest_descendant(index, sibling_ids[target])
