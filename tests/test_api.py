"""
Tests — HTTP API

Run:
  pytest tests/test_api.py -v
"""
import pytest
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

from api.main import create_app
from config.settings import Settings
from events.bus import InMemoryEventBus
from job_queue.release_queue import InMemoryReleaseQueue
from models.schemas import DetailType, ResponderReply


@pytest.fixture
def queue():
    return InMemoryReleaseQueue()


@pytest.fixture
def event_bus():
    return InMemoryEventBus()


@pytest.fixture
def responder():
    mock = AsyncMock()
    mock.respond.return_value = ResponderReply(text="Happy to help!", conversation_id="conv1")
    return mock


@pytest.fixture
def client(queue, event_bus, responder):
    app = create_app(Settings(), queue=queue, bus=event_bus, responder=responder, start_worker=False)
    with TestClient(app) as c:
        yield c


SCHEDULE_BODY = {
    "tenant_id": "t1",
    "contact_pk": "contact#lead@example.com",
    "conversation_id": "conv1",
    "channel": "chat",
    "message_id": "m1",
    "reply_text": "Happy to help!",
    "inbound_text": "Is the unit still available?",
}


class TestDiagnostics:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["queue_backend"] == "InMemoryReleaseQueue"

    def test_personas(self, client):
        response = client.get("/api/v1/personas")
        assert response.json()["personas"] == ["Alex", "Carlos", "Sam"]

    def test_queue_stats_empty(self, client):
        stats = client.get("/api/v1/queue/stats").json()
        assert stats["pending"] == 0
        assert stats["dead_lettered"] == 0
        assert stats["worker_running"] is False


class TestScheduleEndpoint:

    def test_schedule_chat_reply(self, client):
        response = client.post("/api/v1/replies/schedule", json=SCHEDULE_BODY)
        assert response.status_code == 200
        body = response.json()
        assert body["scheduled"] is True
        assert body["timing"]["read_ms"] >= 700
        assert client.get("/api/v1/queue/stats").json()["pending"] == 4

    def test_schedule_sms_reply(self, client):
        client.post("/api/v1/replies/schedule", json={**SCHEDULE_BODY, "channel": "sms"})
        assert client.get("/api/v1/queue/stats").json()["pending"] == 1

    def test_unknown_persona(self, client):
        response = client.post("/api/v1/replies/schedule",
                               json={**SCHEDULE_BODY, "persona_name": "Nobody"})
        assert response.status_code == 404
        assert client.get("/api/v1/queue/stats").json()["pending"] == 0

    def test_invalid_channel(self, client):
        response = client.post("/api/v1/replies/schedule", json={**SCHEDULE_BODY, "channel": "fax"})
        assert response.status_code == 422


class TestInboundEndpoint:

    INBOUND = {
        "tenant_id": "t1",
        "text": "Is the unit still available?",
        "source": "chat",
        "email_lc": "lead@example.com",
        "message_id": "m1",
    }

    def test_delayed(self, client, responder):
        response = client.post("/api/v1/messages/inbound", json=self.INBOUND)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["conversation_id"] == "conv1"
        assert body["timing"]["total_ms"] > 0
        responder.respond.assert_awaited_once()

    def test_immediate(self, client, event_bus):
        response = client.post("/api/v1/messages/inbound",
                               json={**self.INBOUND, "immediate": True, "reason": "urgent"})
        assert response.status_code == 200
        assert response.json()["text"] == "Happy to help!"
        assert len(event_bus.of_type(DetailType.REPLY_CREATED)) == 1

    def test_without_responder(self, queue, event_bus):
        app = create_app(Settings(), queue=queue, bus=event_bus, start_worker=False)
        with TestClient(app) as client:
            response = client.post("/api/v1/messages/inbound", json=self.INBOUND)
        assert response.status_code == 503
