"""API tests through FastAPI's TestClient."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from companion_tavern.app import create_app
from companion_tavern.resolver import DictFrame

TEST_DATA_DIR = Path("data-tests")


def _generate(payload):
    user_turn = payload["chatHistory"]["replace"][-1]["content"]
    return {"text": json.dumps({"reply": "Hello!", "status": {"favor": 12}, "echo": user_turn})}


@pytest.fixture(autouse=True)
def no_env_overrides(monkeypatch):
    for var in ("AI_API_BASE", "AI_API_KEY", "AI_MODEL"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def client() -> TestClient:
    context = DictFrame({"ST_API": {"prompt": {"generate": _generate}}})
    return TestClient(create_app(TEST_DATA_DIR, context=context))


@pytest.fixture
def offline_client() -> TestClient:
    return TestClient(create_app(TEST_DATA_DIR))


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------

def test_turn_round_trip(client):
    resp = client.post("/api/sessions/s1/turn", json={"text": "hello", "date": "2026-03-01"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["failed"] is False
    assert body["reply_text"] == "Hello!"
    assert body["state"]["favor"] == 12
    assert body["channel"] == "ST_API.prompt.generate"

    session = client.get("/api/sessions/s1").json()
    assert [m["text"] for m in session["messages"]] == ["hello", "Hello!"]
    assert session["busy"] is False
    assert client.get("/api/sessions").json() == ["s1"]


def test_turn_is_persisted(client):
    client.post("/api/sessions/s1/turn", json={"text": "hello"})
    state = json.loads((TEST_DATA_DIR / "sessions" / "s1" / "state.json").read_text())
    assert state["favor"] == 12


def test_invalid_turn_body(client):
    resp = client.post("/api/sessions/s1/turn", json={"text": "hi", "user_location": "moon"})
    assert resp.status_code == 422


def test_invalid_slug(client):
    assert client.get("/api/sessions/BAD").status_code == 400


def test_channel_endpoint(client, offline_client):
    assert client.get("/api/sessions/s1/channel").json() == {
        "channel": "ST_API.prompt.generate",
        "available": True,
    }
    assert offline_client.get("/api/sessions/s1/channel").json() == {
        "channel": "none",
        "available": False,
    }


def test_failed_turn_returns_marker(offline_client):
    body = offline_client.post("/api/sessions/s1/turn", json={"text": "hello"}).json()
    assert body["failed"] is True
    assert body["error_type"] == "ConfigurationError"
    assert body["retryable"] is False
    assert body["marker"]["failed"] is True
    assert body["marker"]["retry_input"]["text"] == "hello"


def test_retry_after_configuring_endpoint(offline_client):
    marker = offline_client.post("/api/sessions/s1/turn", json={"text": "hello"}).json()["marker"]
    offline_client.patch("/api/settings", json={"endpoint": {"api_base": "http://llm", "api_key": "k"}})

    answer = json.dumps({"reply": "Back online.", "status": {}})
    with patch("companion_tavern.llm.HttpLLM.__call__", AsyncMock(return_value=answer)):
        resp = offline_client.post(f"/api/sessions/s1/retry/{marker['id']}")

    assert resp.status_code == 200
    assert resp.json()["reply_text"] == "Back online."
    messages = offline_client.get("/api/sessions/s1").json()["messages"]
    assert [m["failed"] for m in messages] == [False, False]


def test_retry_unknown_marker(client):
    assert client.post("/api/sessions/s1/retry/nope").status_code == 404


# ---------------------------------------------------------------------------
# Customization and cache control
# ---------------------------------------------------------------------------

def test_customization(client):
    resp = client.put("/api/sessions/s1/customization", json={"writing_style": "terse"})
    assert resp.status_code == 200
    stored = json.loads((TEST_DATA_DIR / "sessions" / "s1" / "customization.json").read_text())
    assert stored["writing_style"] == "terse"


def test_invalidate(client):
    assert client.post("/api/sessions/s1/invalidate").json() == {"freshness": "uninitialized"}
    client.post("/api/sessions/s1/turn", json={"text": "hello"})
    assert client.post("/api/sessions/s1/invalidate").json() == {"freshness": "dirty"}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def test_settings_mask_api_key(client):
    client.patch("/api/settings", json={"endpoint": {"api_key": "sk-secret"}})
    settings = client.get("/api/settings").json()
    assert settings["endpoint"]["api_key"] == "***"
    assert settings["repair_limit"] == 8


def test_settings_round_trip_keeps_real_key(client):
    client.patch("/api/settings", json={"endpoint": {"api_key": "sk-secret"}})
    settings = client.get("/api/settings").json()
    settings["repair_limit"] = 6

    assert client.patch("/api/settings", json=settings).status_code == 200

    stored = json.loads((TEST_DATA_DIR / "config.json").read_text())
    assert stored["endpoint"]["api_key"] == "sk-secret"
    assert stored["repair_limit"] == 6
    assert client.app.state.registry.config.endpoint.api_key == "sk-secret"


def test_settings_reject_bad_values(client):
    resp = client.patch("/api/settings", json={"repair_limit": "many"})
    assert resp.status_code == 422


def test_check_connection_ok(client):
    resp = MagicMock()
    resp.raise_for_status = MagicMock()
    mock_get = AsyncMock(return_value=resp)
    with patch("httpx.AsyncClient.get", mock_get):
        body = client.post("/api/check-connection", json={"api_base": "http://llm/v1/", "api_key": "k"}).json()
    assert body == {"ok": True}
    assert mock_get.call_args[0][0] == "http://llm/v1/models"
    assert mock_get.call_args.kwargs["headers"] == {"Authorization": "Bearer k"}


def test_check_connection_failure(client):
    mock_get = AsyncMock(side_effect=httpx.ConnectError("refused"))
    with patch("httpx.AsyncClient.get", mock_get):
        body = client.post("/api/check-connection", json={"api_base": "http://llm"}).json()
    assert body["ok"] is False
    assert "refused" in body["error"]


# ---------------------------------------------------------------------------
# Host bridge
# ---------------------------------------------------------------------------

def test_bridge_attaches_remote(offline_client):
    registry = offline_client.app.state.registry
    with offline_client.websocket_connect("/api/bridge") as ws:
        assert registry.remote is not None
        ws.send_text("not json")
        ws.send_text(json.dumps({"id": "unknown", "data": 1}))
