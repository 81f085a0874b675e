import json

from conftest import PATIENT_ID
from labquery.schemas.events import MessageEndEvent, MessageStartEvent


def _frames(body: str) -> list[dict]:
    return [
        json.loads(chunk[len("data: ") :])
        for chunk in body.split("\n\n")
        if chunk.startswith("data: ")
    ]


def test_create_session(client, session_manager):
    response = client.post("/api/v1/sessions", json={"patientScope": PATIENT_ID})

    assert response.status_code == 201
    body = response.json()
    assert body["patientScope"] == PATIENT_ID
    assert session_manager.store.get(body["sessionId"]).patient_scope == PATIENT_ID


def test_create_session_without_body(client):
    response = client.post("/api/v1/sessions")

    assert response.status_code == 201
    assert response.json()["patientScope"] is None


def test_create_session_rejects_bad_scope(client):
    response = client.post("/api/v1/sessions", json={"patientScope": "not-a-uuid"})

    assert response.status_code == 422


def test_post_message_to_unknown_session(client):
    response = client.post("/api/v1/sessions/missing/messages", json={"text": "hi"})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "SESSION_NOT_FOUND"


def test_post_message_to_busy_session(client, session_manager):
    session = session_manager.create_session()
    session.busy = True

    response = client.post(f"/api/v1/sessions/{session.id}/messages", json={"text": "hi"})

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "SESSION_BUSY"
    assert error["status_code"] == 409


def test_post_message_accepted(client):
    with client:
        session_id = client.post("/api/v1/sessions").json()["sessionId"]
        response = client.post(
            f"/api/v1/sessions/{session_id}/messages", json={"text": "latest hba1c?"}
        )

    assert response.status_code == 202
    body = response.json()
    assert body["sessionId"] == session_id
    assert body["status"] == "accepted"
    assert body["messageId"]


def test_post_empty_message_is_rejected(client, session_manager):
    session = session_manager.create_session()

    response = client.post(f"/api/v1/sessions/{session.id}/messages", json={"text": ""})

    assert response.status_code == 422


def test_stream_delivers_buffered_events_in_order(client, session_manager):
    session = session_manager.create_session()
    session.channel.publish(MessageStartEvent(message_id="m1"))
    session.channel.publish(MessageEndEvent(message_id="m1"))
    session.channel.close()

    response = client.get(f"/api/v1/sessions/{session.id}/stream")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert [frame["type"] for frame in _frames(response.text)] == [
        "session_start",
        "message_start",
        "message_end",
    ]
    assert session.channel.attached is False


def test_stream_unknown_session(client):
    response = client.get("/api/v1/sessions/missing/stream")

    assert response.status_code == 404


def test_reset_session(client, session_manager):
    session = session_manager.create_session(PATIENT_ID)

    response = client.post(f"/api/v1/sessions/{session.id}/reset")

    assert response.status_code == 201
    body = response.json()
    assert body["sessionId"] != session.id
    assert body["patientScope"] == PATIENT_ID
    assert session_manager.store.get(session.id) is None


def test_reset_session_can_clear_scope(client, session_manager):
    session = session_manager.create_session(PATIENT_ID)

    response = client.post(
        f"/api/v1/sessions/{session.id}/reset", json={"clearPatientScope": True}
    )

    assert response.json()["patientScope"] is None


def test_delete_session(client, session_manager):
    session = session_manager.create_session()

    response = client.delete(f"/api/v1/sessions/{session.id}")

    assert response.status_code == 204
    assert client.delete(f"/api/v1/sessions/{session.id}").status_code == 404


def test_api_key_is_enforced_when_configured(client, monkeypatch):
    from fastapi import Depends, FastAPI
    from fastapi.testclient import TestClient

    from labquery.api import deps

    monkeypatch.setattr(deps.settings, "api_key", "secret", raising=False)
    app = FastAPI()

    @app.get("/guarded", dependencies=[Depends(deps.require_api_key)])
    async def guarded():
        return {"ok": True}

    guarded_client = TestClient(app)

    assert guarded_client.get("/guarded").status_code == 401
    assert guarded_client.get("/guarded", headers={"X-API-Key": "secret"}).json() == {"ok": True}
