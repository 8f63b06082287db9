import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from chatrelay.deps import get_inference_client, get_redis
from chatrelay.routes import create_app
from chatrelay.services.jwt_auth_service import create_session_token
from chatrelay.settings import settings
from tests.utils import InMemoryRedis, ScriptedInference, text_script


@pytest.fixture
def inference() -> ScriptedInference:
    return ScriptedInference()


@pytest.fixture
def client(inference):
    app = create_app()
    redis = InMemoryRedis()

    async def override_get_redis():
        return redis

    async def override_get_inference_client():
        return inference

    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_inference_client] = override_get_inference_client

    with TestClient(app) as test_client:
        yield test_client


def _receive_until(ws, terminal=("done", "error", "tool_use")) -> list[dict]:
    events = []
    while True:
        event = ws.receive_json()
        events.append(event)
        if event.get("type") in terminal:
            return events


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_create_session_returns_token_and_session_id(client):
    resp = client.post("/sessions", headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["token"]
    assert body["sessionId"]
    assert resp.headers["cache-control"] == "no-store"


def test_sixth_session_from_one_ip_is_rejected(client):
    headers = {"X-Real-IP": "203.0.113.8"}
    for _ in range(settings.max_sessions_per_ip):
        assert client.post("/sessions", headers=headers).status_code == 200

    resp = client.post("/sessions", headers=headers)

    assert resp.status_code == 429
    body = resp.json()
    assert body["error"] == "TOO_MANY_SESSIONS"
    assert body["code"] == 429
    assert body["message"]
    assert resp.headers["cache-control"] == "no-store"

    other = client.post("/sessions", headers={"X-Real-IP": "203.0.113.9"})
    assert other.status_code == 200


def test_session_usage_endpoint(client):
    session_id = client.post("/sessions").json()["sessionId"]

    resp = client.get(f"/sessions/{session_id}/usage")
    assert resp.status_code == 200
    assert resp.json()["tokensUsed"] == 0
    assert resp.json()["tokenLimit"] == settings.token_quota

    missing = client.get("/sessions/does-not-exist/usage")
    assert missing.status_code == 404
    assert missing.json()["detail"]["error"] == "NOT_FOUND"


def test_ws_without_token_is_rejected_with_4400(client):
    with client.websocket_connect("/ws") as ws:
        body = ws.receive_json()
        assert body["error"] == "MISSING_TOKEN"
        assert body["code"] == 400
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()

    assert exc_info.value.code == 4400


def test_ws_with_invalid_token_is_rejected_with_4401(client):
    with client.websocket_connect("/ws?token=not-a-jwt") as ws:
        body = ws.receive_json()
        assert body["error"] == "INVALID_TOKEN"
        assert body["code"] == 401
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()

    assert exc_info.value.code == 4401


def test_ws_with_expired_token_is_rejected(client):
    token, _, _ = create_session_token("s-old", now=0)

    with client.websocket_connect(f"/ws?token={token}") as ws:
        assert ws.receive_json()["error"] == "INVALID_TOKEN"


def test_ws_chat_round_trip(client, inference):
    inference.scripts.append(text_script("Hi", " there"))
    token = client.post("/sessions").json()["token"]

    with client.websocket_connect(f"/ws?token={token}") as ws:
        ws.send_json({"message": "hello", "history": []})
        events = _receive_until(ws)

    assert [e["type"] for e in events] == ["started", "delta", "delta", "usage", "done"]
    assert events[3]["session_total"] == 15
    assert inference.calls[0]["messages"][-1]["content"][0]["text"] == "hello"


def test_ws_non_json_frame_gets_error_event(client):
    token = client.post("/sessions").json()["token"]

    with client.websocket_connect(f"/ws?token={token}") as ws:
        ws.send_text("{not json")
        event = ws.receive_json()

    assert event["type"] == "error"
    assert event["code"] == "VALIDATION_ERROR"


def test_unexpected_error_returns_structured_500():
    app = create_app()

    async def broken_redis():
        raise RuntimeError("redis pool exhausted")

    app.dependency_overrides[get_redis] = broken_redis

    with TestClient(app, raise_server_exceptions=False) as test_client:
        resp = test_client.post("/sessions")

    assert resp.status_code == 500
    body = resp.json()
    assert body["error_code"] == "internal_error"
    assert body["error_id"]
