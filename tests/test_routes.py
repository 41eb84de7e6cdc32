"""HTTP API tests — drive the engine through the backend routes.

The autouse fixture has already pointed backend.services at data-tests/ with
an EchoLLM, so the app here only needs the router.
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.routes import router
from conftest import STORY_DATA, TAVERN_DATA, TEST_DATA_DIR

CHAT = {"chat_id": "c42", "group_id": "g1", "characters": ["Lute", "Captain Varn"], "user_name": "Robin"}


@pytest.fixture
def client() -> TestClient:
    app = FastAPI()
    app.include_router(router, prefix="/api")
    return TestClient(app)


def _load(client: TestClient, story: dict, story_key: str | None = None) -> dict:
    client.put("/api/chat-context", json=CHAT)
    resp = client.post("/api/story", json={"story": story, "story_key": story_key})
    assert resp.status_code == 200
    return resp.json()


# ── Story and checkpoints ────────────────────────────────


class TestStoryRoutes:
    def test_health(self, client) -> None:
        assert client.get("/api/health").json() == {"status": "ok"}

    def test_invalid_story(self, client) -> None:
        resp = client.post("/api/story", json={"story": {"title": "Broken", "checkpoints": []}})
        assert resp.status_code == 422

    def test_load_story(self, client) -> None:
        data = _load(client, STORY_DATA, "tavern-job")
        assert data["source"] == "default"
        assert data["story_key"] == "tavern-job"
        assert data["hydrated"] is True
        assert data["can_persist"] is True
        assert [c["status"] for c in data["checkpoints"]] == ["current", "pending", "pending"]

    def test_no_story_loaded(self, client) -> None:
        assert client.get("/api/state").json()["story"] is None
        assert client.post("/api/checkpoints/0/activate").status_code == 409
        assert client.post("/api/evaluate", json={"text": "deal"}).status_code == 409

    def test_failed_status_is_sticky(self, client) -> None:
        _load(client, STORY_DATA)
        assert client.patch("/api/checkpoints/0/status", json={"status": "failed"}).status_code == 200
        data = client.post("/api/checkpoints/2/activate").json()
        assert [c["status"] for c in data["checkpoints"]] == ["failed", "complete", "current"]

    def test_unknown_checkpoint(self, client) -> None:
        _load(client, STORY_DATA)
        assert client.post("/api/checkpoints/7/activate").status_code == 404
        assert client.patch("/api/checkpoints/-1/status", json={"status": "failed"}).status_code == 404
        assert client.patch("/api/checkpoints/0/status", json={"status": "lost"}).status_code == 422

    def test_evaluate(self, client) -> None:
        _load(client, STORY_DATA)
        matches = client.post("/api/evaluate", json={"text": "Time to BARGAIN"}).json()["matches"]
        assert [(m["transition_id"], m["pattern"]) for m in matches] == [("t-deal", "/BARGAIN/")]

    def test_state_is_restored_for_the_chat(self, client) -> None:
        _load(client, STORY_DATA)
        client.post("/api/checkpoints/1/activate")

        stored = json.loads((TEST_DATA_DIR / "settings.json").read_text())
        assert stored["storyState"]["c42"]["active_checkpoint_key"] == "B"

        client.put("/api/chat-context", json={**CHAT, "chat_id": "c99"})
        assert client.get("/api/state").json()["runtime"]["active_checkpoint_key"] == "A"

        data = client.put("/api/chat-context", json=CHAT).json()
        assert data["source"] == "stored"
        assert data["runtime"]["active_checkpoint_key"] == "B"


# ── Messages and generation ──────────────────────────────


class TestChatRoutes:
    def test_user_message_proposes_evaluation(self, client) -> None:
        _load(client, STORY_DATA)
        resp = client.post("/api/messages", json={"text": "Let's make a deal", "is_user": True})
        assert resp.status_code == 201
        data = resp.json()
        assert data["evaluation"]["reason"] == "trigger"
        assert data["evaluation"]["matches"][0]["to"] == "B"
        assert data["messages"][0]["name"] == "Robin"

    def test_character_message_needs_name(self, client) -> None:
        _load(client, STORY_DATA)
        assert client.post("/api/messages", json={"text": "Hm."}).status_code == 422

    def test_talk_control_reply(self, client) -> None:
        _load(client, TAVERN_DATA)
        data = client.post("/api/messages", json={"text": "A song for the house!", "name": "Lute"}).json()
        assert data["evaluation"] is None
        assert [(m["name"], m["mes"]) for m in data["messages"]] == [
            ("Lute", "A song for the house!"),
            ("Lute", "Hello"),
        ]
        assert "story_driver_talk_control" in data["messages"][1]["extra"]

    def test_generation_defers_then_intercepts(self, client) -> None:
        _load(client, TAVERN_DATA)
        started = client.post("/api/generation/start", json={"type": "normal"}).json()
        assert started == {"intercepted": False, "aborted": False, "messages": []}

        client.post("/api/messages", json={"text": "A song!", "name": "Lute"})
        assert client.get("/api/state").json()["talk_control"]["queue_length"] == 1

        again = client.post("/api/generation/start", json={"type": "normal"}).json()
        assert again["intercepted"] is True
        assert again["aborted"] is True
        assert [m["mes"] for m in again["messages"]] == ["Hello"]

    def test_generation_end_flushes(self, client) -> None:
        _load(client, TAVERN_DATA)
        client.post("/api/generation/start", json={"type": "normal"})
        client.post("/api/messages", json={"text": "A song!", "name": "Lute"})

        data = client.post("/api/generation/end").json()
        assert [m["mes"] for m in data["messages"]] == ["Hello"]
        assert len(client.get("/api/messages").json()) == 2

    def test_unknown_generation_phase(self, client) -> None:
        assert client.post("/api/generation/pause").status_code == 404


# ── Settings ─────────────────────────────────────────────


class TestSettingsRoutes:
    def test_update_applies_to_engine(self, client) -> None:
        _load(client, STORY_DATA)
        assert client.patch("/api/settings", json={"interval_turns": 1}).json()["interval_turns"] == 1
        assert client.get("/api/settings").json()["interval_turns"] == 1

        data = client.post("/api/messages", json={"text": "hello", "is_user": True}).json()
        assert data["evaluation"]["reason"] == "interval"

    def test_invalid_update(self, client) -> None:
        assert client.patch("/api/settings", json={"flush_guard_limit": 0}).status_code == 422
