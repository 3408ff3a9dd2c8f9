from types import SimpleNamespace

import pytest

from turns.navigator import (
    ForestIndex,
    collect_subtree,
    get_ancestor_on_active_path,
    get_children,
    get_latest_descendant,
    get_path,
    get_sibling_position,
    get_siblings,
    navigate_siblings,
)


def _index(*pairs):
    return ForestIndex.from_turns(SimpleNamespace(id=turn_id, parent_id=parent) for turn_id, parent in pairs)


def _sample_index():
    # root -> a, b, c ; b -> b1 -> b2 ; c -> c1, c2
    return _index(
        ("root", None),
        ("a", "root"),
        ("b", "root"),
        ("c", "root"),
        ("b1", "b"),
        ("b2", "b1"),
        ("c1", "c"),
        ("c2", "c"),
    )


def test_children_keep_insertion_order() -> None:
    index = _sample_index()
    assert get_children(index, None) == ["root"]
    assert get_children(index, "root") == ["a", "b", "c"]
    assert get_children(index, "a") == []
    assert get_siblings(index, "b") == ["a", "b", "c"]
    assert get_siblings(index, "missing") == []


def test_ancestor_on_active_path() -> None:
    index = _sample_index()
    assert get_ancestor_on_active_path(index, "b2", ["a", "b", "c"]) == "b"
    assert get_ancestor_on_active_path(index, "b", ["a", "b", "c"]) == "b"
    assert get_ancestor_on_active_path(index, "c1", ["a", "b"]) is None
    assert get_ancestor_on_active_path(index, None, ["a"]) is None


def test_latest_descendant_follows_last_child() -> None:
    index = _sample_index()
    assert get_latest_descendant(index, "root") == "c2"
    assert get_latest_descendant(index, "b") == "b2"
    assert get_latest_descendant(index, "a") == "a"


def test_path_is_root_to_leaf() -> None:
    index = _sample_index()
    assert get_path(index, "b2") == ["root", "b", "b1", "b2"]
    assert get_path(index, None) == []
    with pytest.raises(KeyError):
        get_path(index, "missing")


def test_path_detects_cycles() -> None:
    index = ForestIndex(parents={"x": "y", "y": "x"}, children={"x": ["y"], "y": ["x"]})
    with pytest.raises(RuntimeError):
        get_path(index, "x")


def test_collect_subtree_lists_parents_first() -> None:
    index = _sample_index()
    assert collect_subtree(index, "b") == ["b", "b1", "b2"]
    subtree = collect_subtree(index, "root")
    assert set(subtree) == set(index.parents)
    assert subtree.index("c") < subtree.index("c1")


def test_sibling_round_trip() -> None:
    index = _sample_index()
    siblings = ["a", "b", "c"]
    assert get_sibling_position(index, "b2", siblings) == 1

    forward = navigate_siblings(index, "b2", siblings, 1)
    assert forward == "c2"
    back = navigate_siblings(index, forward, siblings, -1)
    assert back == "b2"


def test_navigation_stops_at_the_ends() -> None:
    index = _sample_index()
    assert navigate_siblings(index, "a", ["a", "b", "c"], -1) is None
    assert navigate_siblings(index, "c1", ["a", "b", "c"], 1) is None
    assert navigate_siblings(index, "c1", ["b1"], 1) is None
