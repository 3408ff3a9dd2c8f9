from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from llm.schemas import Evolution, TurnContent
from models import Base
from turns.persistence import InMemoryTurnRepository, SqlTurnRepository
from turns.types import AssistantTurn, UserTurn, turn_from_record, turn_to_record, utcnow


@pytest.fixture
def repository():
    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    yield SqlTurnRepository(factory)
    engine.dispose()


def _tree():
    now = utcnow()
    root = UserTurn(
        id="u1",
        production_id="prod",
        parent_id=None,
        content=TurnContent(performance="Hello"),
        receiving_assistant_id="A1",
        sending_persona_id="P1",
        sender_name="Mara",
        created_at=now,
    )
    reply = AssistantTurn(
        id="a1",
        production_id="prod",
        parent_id="u1",
        content=TurnContent(performance="Hi", evolution=Evolution(self_perception="curious")),
        assistant_id="A1",
        created_at=now + timedelta(seconds=1),
    )
    follow = UserTurn(
        id="u2",
        production_id="prod",
        parent_id="a1",
        content=TurnContent(performance="Go on"),
        receiving_assistant_id="A1",
        is_directive=True,
        created_at=now + timedelta(seconds=2),
    )
    sibling = AssistantTurn(
        id="a2",
        production_id="prod",
        parent_id="u1",
        content=TurnContent(performance="Hey"),
        assistant_id="A2",
        created_at=now + timedelta(seconds=3),
    )
    return [root, reply, follow, sibling]


def test_sql_repository_round_trips_turns(repository) -> None:
    turns = _tree()
    for turn in turns:
        assert repository.create_turn(turn) == turn

    loaded = repository.list_turns("prod")
    assert [turn.id for turn in loaded] == ["u1", "a1", "u2", "a2"]
    assert loaded == turns
    assert repository.list_turns("other") == []


def test_sql_repository_updates_only_editable_fields(repository) -> None:
    for turn in _tree():
        repository.create_turn(turn)

    updated = repository.update_turn("a1", {"content": TurnContent(performance="Edited"), "assistant_id": "A3"})
    assert updated.content == TurnContent(performance="Edited")
    assert updated.assistant_id == "A3"
    assert updated.parent_id == "u1"

    with pytest.raises(ValueError):
        repository.update_turn("a1", {"parent_id": None})
    with pytest.raises(KeyError):
        repository.update_turn("missing", {"is_directive": True})


def test_sql_repository_deletes_whole_subtree(repository) -> None:
    for turn in _tree():
        repository.create_turn(turn)

    repository.delete_turn("a1")
    assert [turn.id for turn in repository.list_turns("prod")] == ["u1", "a2"]

    with pytest.raises(KeyError):
        repository.delete_turn("a1")


def test_in_memory_repository_matches_sql_behaviour() -> None:
    repository = InMemoryTurnRepository()
    for turn in _tree():
        repository.create_turn(turn)

    with pytest.raises(KeyError):
        repository.create_turn(_tree()[0])

    repository.delete_turn("a1")
    assert [turn.id for turn in repository.list_turns("prod")] == ["u1", "a2"]


def test_records_dispatch_on_role() -> None:
    root, reply, _, _ = _tree()
    assert turn_from_record(turn_to_record(root)) == root
    assert turn_from_record(turn_to_record(reply)) == reply

    record = turn_to_record(reply)
    record["role"] = "narrator"
    with pytest.raises(ValueError):
        turn_from_record(record)

    record = turn_to_record(root)
    record["receiving_assistant_id"] = None
    with pytest.raises(ValueError):
        turn_from_record(record)
