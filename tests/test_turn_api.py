import json

from fastapi.testclient import TestClient

from app.main import app
from llm.client import CompletionClient, LLMClientError
from llm.schemas import ModelConfig
from turns.persistence import InMemoryTurnRepository
from turns.store import TurnStore

CONFIG = ModelConfig(model_id="test-model", api_endpoint="http://llm.test/v1")


class StubCompletionClient(CompletionClient):
    def __init__(self, *replies):
        super().__init__()
        self.replies = list(replies)

    def _iter_content_deltas(self, messages, model_config, cancel_event):
        for chunk in self.replies.pop(0):
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def test_connection(self, model_config):
        if model_config.api_key == "bad":
            raise LLMClientError("Completion endpoint rejected the credentials.", reason="auth")
        return {"ok": True, "model": model_config.model_id, "reply": "Hello!"}


def _patch_store(monkeypatch, *replies):
    store = TurnStore(InMemoryTurnRepository(), StubCompletionClient(*replies), model_config=CONFIG)
    monkeypatch.setattr("app.main.get_store", lambda: store)
    return store


def _events(response):
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


def test_health_reports_database_status(monkeypatch) -> None:
    monkeypatch.setattr("app.main.check_db_connection", lambda: None)
    client = TestClient(app)
    assert client.get("/health").json() == {"status": "ok"}

    def broken():
        raise RuntimeError("no database")

    monkeypatch.setattr("app.main.check_db_connection", broken)
    assert client.get("/health").status_code == 503


def test_conversation_round_trip(monkeypatch) -> None:
    _patch_store(monkeypatch, ['{"performance": "Hi', ' there", "meta": "warm"}'])
    client = TestClient(app)

    response = client.post("/productions/p1/turns", json={"performance": "Hello", "receiving_assistant_id": "A1"})
    assert response.status_code == 200
    user_turn = response.json()
    assert user_turn["role"] == "user"
    assert user_turn["sender_name"] == "User"

    response = client.post("/productions/p1/assistant_turns", json={"assistant_id": "A1"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    events = _events(response)
    assert events[0]["event"] == "turn_started"
    assert events[0]["turn"]["parent_id"] == user_turn["id"]
    assert {"event": "field_completed", "field": "performance", "value": "Hi there"} in events
    assert events[-1]["event"] == "turn_completed"
    assistant_turn = events[-1]["turn"]
    assert assistant_turn["content"] == {"performance": "Hi there", "meta": "warm"}

    listing = client.get("/productions/p1/turns").json()
    assert [turn["id"] for turn in listing["turns"]] == [user_turn["id"], assistant_turn["id"]]
    assert listing["active_turn_id"] == assistant_turn["id"]
    assert listing["streaming"]["is_streaming"] is False

    path = client.get("/productions/p1/active_path").json()
    assert [turn["role"] for turn in path["turns"]] == ["user", "assistant"]

    response = client.delete(f"/turns/{user_turn['id']}")
    assert response.json() == {"deleted": user_turn["id"], "active_turn_id": None}
    assert client.get("/productions/p1/turns").json()["turns"] == []


def test_patch_and_sibling_navigation(monkeypatch) -> None:
    store = _patch_store(monkeypatch, ['{"performance": "One"}'], ['{"performance": "Two"}'])
    client = TestClient(app)
    root = client.post("/productions/p1/turns", json={"performance": "Hi", "receiving_assistant_id": "A1"}).json()
    first = _events(client.post("/productions/p1/assistant_turns", json={"assistant_id": "A1"}))[-1]["turn"]
    second = _events(client.post(f"/turns/{first['id']}/regenerate", json={"assistant_id": "A2"}))[-1]["turn"]

    assert second["parent_id"] == root["id"]
    siblings = client.get(f"/turns/{first['id']}/siblings").json()["siblings"]
    assert siblings == [first["id"], second["id"]]

    response = client.post("/productions/p1/navigate", json={"turn_id": second["id"], "direction": "back"})
    assert response.json()["active_turn_id"] == first["id"]
    assert client.get("/productions/p1/active").json() == {"active_turn_id": first["id"]}

    response = client.patch(f"/turns/{first['id']}", json={"content": {"meta": "kept"}})
    assert response.status_code == 200
    assert response.json()["content"] == {"performance": "One", "meta": "kept"}
    assert store.get_turn(first["id"]).content.meta == "kept"

    response = client.put("/productions/p1/active", json={"turn_id": root["id"]})
    assert response.json() == {"active_turn_id": root["id"]}


def test_errors_map_to_status_codes(monkeypatch) -> None:
    store = _patch_store(monkeypatch, ['{"performance": "Late"}'])
    client = TestClient(app)

    response = client.post("/productions/p1/turns", json={"performance": "Hello"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "VALIDATION_ERROR"

    assert client.delete("/turns/missing").status_code == 404
    assert client.put("/productions/p1/active", json={"turn_id": "missing"}).status_code == 404

    root = client.post("/productions/p1/turns", json={"performance": "Hi", "receiving_assistant_id": "A1"}).json()
    response = client.patch(f"/turns/{root['id']}", json={"assistant_id": "A2"})
    assert response.status_code == 400

    stream = store.insert_assistant_turn("p1", "A1", root["id"])
    try:
        response = client.post("/productions/p1/assistant_turns", json={"assistant_id": "A2"})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "CONFLICT"
        response = client.post("/productions/p1/turns", json={"performance": "Wait", "receiving_assistant_id": "A1"})
        assert response.status_code == 409
        assert client.get("/streaming").json()["turn_id"] == stream.turn.id
    finally:
        stream.close()
    assert client.get("/streaming").json()["is_streaming"] is False


def test_upstream_failure_is_reported_in_stream(monkeypatch) -> None:
    failure = LLMClientError("Completion endpoint unreachable: http://llm.test/v1", reason="unreachable")
    _patch_store(monkeypatch, ['{"performance": "Hal', failure])
    client = TestClient(app)
    root = client.post("/productions/p1/turns", json={"performance": "Hi", "receiving_assistant_id": "A1"}).json()

    events = _events(client.post("/productions/p1/assistant_turns", json={"assistant_id": "A1"}))

    assert events[-1]["event"] == "error"
    assert events[-1]["code"] == "UPSTREAM_ERROR"
    assert events[-1]["reason"] == "unreachable"
    listing = client.get("/productions/p1/turns").json()
    assert [turn["id"] for turn in listing["turns"]] == [root["id"]]
    assert listing["streaming"]["error"] == "Completion endpoint unreachable: http://llm.test/v1"


def test_persona_evolutions_endpoint(monkeypatch) -> None:
    reply = json.dumps({"performance": "Fine.", "evolution": {"private_knowledge": "the key is fake"}})
    _patch_store(monkeypatch, [reply])
    client = TestClient(app)
    client.post("/productions/p1/turns", json={"performance": "Hi", "receiving_assistant_id": "A1"})
    turn = _events(client.post("/productions/p1/assistant_turns", json={"assistant_id": "A1"}))[-1]["turn"]

    entries = client.get("/productions/p1/evolutions/A1").json()
    assert len(entries) == 1
    assert entries[0]["turn_id"] == turn["id"]
    assert entries[0]["private_knowledge"] == "the key is fake"
    assert client.get("/productions/p1/evolutions/A2").json() == []


def test_model_connection_check(monkeypatch) -> None:
    _patch_store(monkeypatch)
    client = TestClient(app)
    payload = {"model_id": "test-model", "api_endpoint": "http://llm.test/v1"}

    response = client.post("/models/test", json=payload)
    assert response.json() == {"ok": True, "model": "test-model", "reply": "Hello!"}

    response = client.post("/models/test", json={**payload, "api_key": "bad"})
    assert response.status_code == 502
    assert response.json()["detail"]["reason"] == "auth"
