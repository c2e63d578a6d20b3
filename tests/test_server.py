"""
Tests for the FastAPI server endpoints.
"""

from unittest.mock import patch

from fastapi.testclient import TestClient

from fakes import EchoTranscriptStream, FakeLLM, FakeSynthesizer
from src.voicedesk.config import get_config
from src.voicedesk.session import Session

GREETING = "Welcome to the Ministry of Detailing! How can I help you today?"


def fake_session_factory(created: list, stream: EchoTranscriptStream):
    def factory(outbound, knowledge_base, config=None, system_prompt=None):
        session = Session(
            outbound,
            stream=stream,
            llm=FakeLLM(replies=["For dog hair, I'd recommend our Interior Detail."]),
            synthesizer=FakeSynthesizer(),
            config=get_config(),
        )
        created.append((session, knowledge_base))
        return session

    return factory


class TestHttpEndpoints:
    def test_health(self):
        from server.app import app

        client = TestClient(app, raise_server_exceptions=False)
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert "active_sessions" in body

    def test_metrics(self):
        from server.app import app

        client = TestClient(app, raise_server_exceptions=False)
        response = client.get("/metrics")

        assert response.status_code == 200
        for key in ("uptime_seconds", "total_sessions", "active_sessions", "total_turns", "total_interruptions"):
            assert key in response.json()


class TestWebSocket:
    def test_session_round_trip(self):
        from server.app import app, metrics

        created = []
        stream = EchoTranscriptStream()
        sessions_before = metrics.total_sessions

        with patch("src.voicedesk.session.create_session", side_effect=fake_session_factory(created, stream)):
            client = TestClient(app)
            with client.websocket_connect("/ws") as ws:
                assert ws.receive_bytes() == b"audio:" + GREETING.encode()

                ws.send_bytes(b"I have dog hair in my car")
                assert ws.receive_bytes() == b"audio:For dog hair, I'd recommend our Interior Detail."

        session, knowledge_base = created[0]
        assert stream.fed == [b"I have dog hair in my car"]
        assert stream.close_count == 1
        assert session.is_closed is True
        assert session.history.get_messages()[0] == {"role": "user", "content": "I have dog hair in my car"}
        assert any(s["name"] == "Interior Detail" for s in knowledge_base["services"])
        assert metrics.total_sessions == sessions_before + 1
        assert metrics.active_sessions == 0

    def test_text_frames_are_ignored(self):
        from server.app import app

        created = []
        stream = EchoTranscriptStream()

        with patch("src.voicedesk.session.create_session", side_effect=fake_session_factory(created, stream)):
            client = TestClient(app)
            with client.websocket_connect("/ws") as ws:
                ws.receive_bytes()
                ws.send_text("hello")

        assert stream.fed == []
        assert stream.close_count == 1
