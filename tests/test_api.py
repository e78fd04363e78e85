"""
Tests for the FastAPI surface: health, metrics export, session listing
and the voice websocket driven with typed text.
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api.main import app, session_manager
from voice.export import CSV_COLUMNS


@pytest.fixture
def client():
    session_manager.settings.stub.simulate_delay = False
    session_manager.collector.clear()
    with TestClient(app) as c:
        yield c
    session_manager.collector.clear()


def _drain(ws) -> list[dict]:
    events = []
    try:
        while True:
            events.append(ws.receive_json())
    except WebSocketDisconnect:
        return events


def _until(ws, kind: str) -> list[dict]:
    events = []
    while True:
        event = ws.receive_json()
        events.append(event)
        if event["type"] == kind:
            return events


class TestHTTP:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["mode"] == "stub"
        assert body["active_sessions"] == 0

    def test_metrics_empty(self, client):
        body = client.get("/api/v1/voice/metrics").json()
        assert body["summary"]["total_turns"] == 0
        assert body["conversations"] == []

    def test_metrics_csv(self, client):
        response = client.get("/api/v1/voice/metrics.csv")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text.split("\n")[0] == ",".join(f'"{c}"' for c in CSV_COLUMNS)

    def test_unknown_session(self, client):
        assert client.get("/api/v1/voice/sessions/missing").status_code == 404


class TestVoiceWebSocket:

    def test_text_turn_and_metrics(self, client):
        with client.websocket_connect("/ws/voice?channel=demo") as ws:
            connected = ws.receive_json()
            assert connected["type"] == "connected"
            conversation_id = connected["conversationId"]

            listing = client.get("/api/v1/voice/sessions").json()
            assert listing["active_sessions"] == 1
            assert listing["sessions"][0]["channel"] == "demo"

            ws.send_json({"type": "text", "text": "Do you have a pool?"})
            events = _until(ws, "response")
            assert [e["type"] for e in events] == ["transcript", "classification", "response"]
            assert events[1]["intent"] == "ask_amenities"

            ws.send_json({"type": "end"})
            _drain(ws)

        metrics = client.get("/api/v1/voice/metrics").json()
        assert metrics["summary"]["total_turns"] == 1
        assert metrics["conversations"][0]["conversation_id"] == conversation_id
        assert client.get(f"/api/v1/voice/sessions/{conversation_id}").status_code == 404

    def test_end_closes_socket(self, client):
        with client.websocket_connect("/ws/voice") as ws:
            ws.receive_json()
            ws.send_json({"type": "end"})
            with pytest.raises(WebSocketDisconnect) as exc:
                while True:
                    ws.receive_json()
            assert exc.value.code == 1000

    def test_setup_profile(self, client):
        with client.websocket_connect("/ws/voice") as ws:
            ws.receive_json()
            ws.send_json({"type": "setup", "profile": {"name": "Harbor Inn", "amenities": ["Sauna"]}})
            ws.send_json({"type": "text", "text": "Hello"})
            response = _until(ws, "response")[-1]
            assert "Harbor Inn" in response["text"]
            ws.send_json({"type": "end"})
            _drain(ws)

    def test_bad_messages_reported(self, client):
        with client.websocket_connect("/ws/voice?channel=carrier-pigeon") as ws:
            ws.receive_json()
            ws.send_text("not json")
            assert ws.receive_json()["message"] == "Malformed JSON message"
            ws.send_json({"type": "bogus"})
            assert ws.receive_json()["message"] == "Unknown message type: bogus"
            ws.send_json({"type": "setup", "profile": {"amenities": "pool"}})
            assert ws.receive_json()["message"].startswith("Invalid setup payload")

            sessions = client.get("/api/v1/voice/sessions").json()["sessions"]
            assert sessions[0]["channel"] == "web"
            ws.send_json({"type": "end"})
            _drain(ws)

    def test_audio_frames_accepted(self, client):
        with client.websocket_connect("/ws/voice") as ws:
            connected = ws.receive_json()
            ws.send_bytes(bytes(640))
            snapshot = client.get(f"/api/v1/voice/sessions/{connected['conversationId']}").json()
            assert snapshot["dropped_frames"] == 0
            ws.send_json({"type": "end"})
            _drain(ws)
