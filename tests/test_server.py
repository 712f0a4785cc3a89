"""
Tests for the dev gateway (FastAPI app)
=======================================
Discovery, the server side of HELLO/IDENTIFY/RESUME, replay on resume, and the close
codes the dev gateway uses to reject bad clients.
"""
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from server.main import create_app
from shared.codec import build_identify, encode_payload, heartbeat_frame, identify_frame, resume_frame
from shared.config import Settings
from shared.models import Opcode

GATEWAY_PATH = "/gateway?v=6&encoding=json"


@pytest.fixture
def client():
    settings = Settings(DEV_EVENT_INTERVAL_S=3600, DEV_HEARTBEAT_INTERVAL_MS=10_000)
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def identify(ws, token="tok"):
    hello = ws.receive_json()
    assert hello["op"] == Opcode.HELLO
    ws.send_text(identify_frame(build_identify(token, "kiyo")))
    ready = ws.receive_json()
    guild = ws.receive_json()
    return hello, ready, guild


class TestHttp:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_discovery_points_at_websocket(self, client):
        resp = client.get("/api/gateway")
        assert resp.json() == {"url": "ws://testserver/gateway"}

    def test_stats_counts_sessions(self, client):
        with client.websocket_connect(GATEWAY_PATH) as ws:
            identify(ws)
            stats = client.get("/stats").json()
            assert stats["active_connections"] == 1
            assert stats["sessions"] == 1
            assert stats["total_dispatches"] == 2
        assert client.get("/stats").json()["sessions"] == 1


class TestHandshake:
    def test_hello_then_identify_then_ready(self, client):
        with client.websocket_connect(GATEWAY_PATH) as ws:
            hello, ready, guild = identify(ws)

        assert hello["d"] == {"heartbeat_interval": 10_000}
        assert ready["op"] == Opcode.DISPATCH
        assert ready["t"] == "READY"
        assert ready["s"] == 1
        assert ready["d"]["session_id"]
        assert guild["t"] == "GUILD_CREATE"
        assert guild["s"] == 2

    def test_heartbeat_before_identify_is_acked(self, client):
        with client.websocket_connect(GATEWAY_PATH) as ws:
            ws.receive_json()
            ws.send_text(heartbeat_frame(-1))
            assert ws.receive_json()["op"] == Opcode.HEARTBEAT_ACK

    def test_heartbeat_after_ready_is_acked(self, client):
        with client.websocket_connect(GATEWAY_PATH) as ws:
            identify(ws)
            ws.send_text(heartbeat_frame(2))
            assert ws.receive_json()["op"] == Opcode.HEARTBEAT_ACK

    def test_resume_replays_missed_dispatches(self, client):
        with client.websocket_connect(GATEWAY_PATH) as ws:
            _, ready, _ = identify(ws)
        session_id = ready["d"]["session_id"]

        with client.websocket_connect(GATEWAY_PATH) as ws:
            ws.receive_json()
            ws.send_text(resume_frame("tok", session_id, 1))
            replayed = ws.receive_json()
            resumed = ws.receive_json()

        assert (replayed["t"], replayed["s"]) == ("GUILD_CREATE", 2)
        assert resumed["t"] == "RESUMED"
        assert resumed["s"] == 3

    def test_resume_unknown_session_is_invalid(self, client):
        with client.websocket_connect(GATEWAY_PATH) as ws:
            ws.receive_json()
            ws.send_text(resume_frame("tok", "nope", 5))
            invalid = ws.receive_json()
            assert invalid == {"op": Opcode.INVALID_SESSION, "d": False}

            # the socket stays open for a fresh IDENTIFY
            ws.send_text(identify_frame(build_identify("tok", "kiyo")))
            assert ws.receive_json()["t"] == "READY"

    def test_resume_with_wrong_token_is_invalid(self, client):
        with client.websocket_connect(GATEWAY_PATH) as ws:
            _, ready, _ = identify(ws, token="tok")

        with client.websocket_connect(GATEWAY_PATH) as ws:
            ws.receive_json()
            ws.send_text(resume_frame("other", ready["d"]["session_id"], 2))
            assert ws.receive_json()["op"] == Opcode.INVALID_SESSION


class TestRejections:
    def close_code(self, ws) -> int:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
        return exc.value.code

    def test_wrong_version_is_rejected(self, client):
        with client.websocket_connect("/gateway?v=9&encoding=json") as ws:
            assert self.close_code(ws) == 4012

    def test_status_update_before_identify(self, client):
        with client.websocket_connect(GATEWAY_PATH) as ws:
            ws.receive_json()
            ws.send_text(encode_payload(Opcode.STATUS_UPDATE, {"status": "online"}))
            assert self.close_code(ws) == 4003

    def test_empty_token(self, client):
        with client.websocket_connect(GATEWAY_PATH) as ws:
            ws.receive_json()
            ws.send_text(identify_frame(build_identify("", "kiyo")))
            assert self.close_code(ws) == 4004

    def test_garbage_frame(self, client):
        with client.websocket_connect(GATEWAY_PATH) as ws:
            ws.receive_json()
            ws.send_text("{not json")
            assert self.close_code(ws) == 4002

    def test_unknown_opcode_after_ready(self, client):
        with client.websocket_connect(GATEWAY_PATH) as ws:
            identify(ws)
            ws.send_text(json.dumps({"op": 99, "d": None}))
            assert self.close_code(ws) == 4001
