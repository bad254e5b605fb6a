"""
Tests for the FastAPI application: WebSocket protocol, health and internal events.
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from dm_gateway.components.data.user_directory import InMemoryUserDirectory
from dm_gateway.connection_manager import ConnectionManager
from dm_gateway.main import create_app
from shared.config.settings import settings

PONG = '{"type":"pong"}'


def make_token(user_id: str, **overrides) -> str:
    claims = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "type": "access",
    }
    claims.update(overrides)
    return jwt.encode(claims, settings.jwt_secret, algorithm="HS256")


@pytest.fixture
def gateway():
    return ConnectionManager(InMemoryUserDirectory())


@pytest.fixture
def client(gateway):
    with TestClient(create_app(gateway, start_background_tasks=False)) as test_client:
        yield test_client


@pytest.fixture
def trusted(monkeypatch):
    monkeypatch.setattr(settings, "ws_trust_client_user_id", True)


def go_online(ws, user_id: str) -> None:
    ws.send_json({"type": "online", "userId": user_id})
    assert ws.receive_json() == {"type": "receiveOnline", "data": {"userId": user_id, "online": True}}


def sync(ws) -> None:
    """Wait until every frame sent so far has been processed."""
    ws.send_text("ping")
    assert ws.receive_text() == PONG


class TestHealth:

    def test_health_check(self, client):
        response = client.get("/ws/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "dm-gateway"
        assert data["total_connections"] == 0
        assert "metrics" in data


class TestAuthentication:

    def test_token_authentication(self, client, gateway):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "online", "token": make_token("alice")})
            assert ws.receive_json() == {
                "type": "receiveOnline",
                "data": {"userId": "alice", "online": True},
            }
            assert gateway.registry.is_online("alice")

    def test_invalid_token_closes_socket(self, client, gateway):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "online", "token": "not-a-jwt"})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 4001
        assert gateway.metrics.get_snapshot()["connections"]["rejected_auth"] == 1

    def test_expired_token_closes_socket(self, client):
        expired = make_token("alice", exp=datetime.now(timezone.utc) - timedelta(minutes=1))
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "online", "token": expired})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 4001

    def test_user_id_rejected_unless_trusted(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "online", "userId": "alice"})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 4001

    def test_trusted_user_id(self, client, trusted):
        with client.websocket_connect("/ws") as ws:
            go_online(ws, "alice")

    def test_disconnect_removes_connection(self, client, gateway, trusted):
        with client.websocket_connect("/ws") as ws:
            go_online(ws, "alice")
        response = client.get("/ws/health")
        assert response.json()["total_connections"] == 0
        assert not gateway.registry.is_online("alice")


class TestClientProtocol:

    def test_heartbeat(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("ping")
            assert ws.receive_text() == PONG
            ws.send_text('{"type":"ping"}')
            assert ws.receive_text() == PONG

    def test_invalid_json(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            assert ws.receive_json() == {"type": "error", "data": {"message": "Invalid JSON"}}

    def test_unknown_type(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "teleport"})
            assert ws.receive_json() == {"type": "error", "data": {"message": "Unknown message type"}}

    @pytest.mark.parametrize("message_type", [["online"], {"name": "online"}, 7, None])
    def test_non_string_type_keeps_socket_open(self, client, message_type):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": message_type})
            assert ws.receive_json() == {"type": "error", "data": {"message": "Unknown message type"}}
            ws.send_text("ping")
            assert ws.receive_text() == PONG

    def test_join_before_online(self, client, gateway):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "joinChannel", "room": "c1"})
            assert ws.receive_json() == {"type": "error", "data": {"message": "Not authenticated"}}
            assert gateway.rooms.subscribers_of("channel:c1") == set()

    def test_invalid_room(self, client, trusted):
        with client.websocket_connect("/ws") as ws:
            go_online(ws, "alice")
            ws.send_json({"type": "joinChannel", "room": ""})
            assert ws.receive_json() == {"type": "error", "data": {"message": "Invalid room"}}

    def test_join_maps_to_channel_room(self, client, gateway, trusted):
        with client.websocket_connect("/ws") as ws:
            go_online(ws, "alice")
            ws.send_json({"type": "joinChannel", "rooms": ["c1", "c2"]})
            sync(ws)
            assert len(gateway.rooms.subscribers_of("channel:c1")) == 1
            assert len(gateway.rooms.subscribers_of("channel:c2")) == 1

            ws.send_json({"type": "leaveChannel", "room": "c2"})
            sync(ws)
            assert gateway.rooms.subscribers_of("channel:c2") == set()

    def test_message_relay(self, client, trusted):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            go_online(alice, "alice")
            go_online(bob, "bob")
            alice.send_json({"type": "joinChannel", "room": "c1"})
            sync(alice)
            bob.send_json({"type": "joinChannel", "room": "c1"})
            sync(bob)

            alice.send_json({"type": "sendMessage", "room": "c1", "data": {"text": "hi"}})
            assert bob.receive_json() == {"type": "receiveMessage", "data": {"text": "hi"}}

    def test_offline_keeps_socket_open(self, client, gateway, trusted):
        with client.websocket_connect("/ws") as ws:
            go_online(ws, "alice")
            ws.send_json({"type": "offline"})
            sync(ws)
            assert not gateway.registry.is_online("alice")
            assert gateway.total_connections == 1

    def test_message_too_large(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ws_max_message_size", 16)
        with client.websocket_connect("/ws") as ws:
            ws.send_text("x" * 64)
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_text()
        assert exc_info.value.code == 1009

    def test_receive_timeout(self, client, gateway, monkeypatch):
        monkeypatch.setattr(settings, "ws_receive_timeout", 0.05)
        with client.websocket_connect("/ws") as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_text()
        assert exc_info.value.code == 1000
        assert gateway.metrics.get_snapshot()["connections"]["timeouts"] == 1

    def test_origin_not_allowed(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws", headers={"origin": "http://evil.example"}):
                pass
        assert exc_info.value.code == 4003


class TestFriendPresence:

    def test_friend_online_and_offline(self, trusted):
        gateway = ConnectionManager(InMemoryUserDirectory({"alice": ["bob"]}))
        with TestClient(create_app(gateway, start_background_tasks=False)) as client:
            with client.websocket_connect("/ws") as bob:
                go_online(bob, "bob")
                with client.websocket_connect("/ws") as alice:
                    go_online(alice, "alice")
                    assert bob.receive_json() == {
                        "type": "receiveFriendOnline",
                        "data": {"userId": "alice", "online": True},
                    }
                assert bob.receive_json() == {
                    "type": "receiveFriendOffline",
                    "data": {"userId": "alice", "online": False},
                }


class TestInternalEvents:

    def test_publish_to_connected_user(self, client, trusted):
        with client.websocket_connect("/ws") as ws:
            go_online(ws, "alice")
            response = client.post(
                "/internal/events",
                json={
                    "kind": "receiveChannelCreate",
                    "rooms": ["channel:c1"],
                    "user_ids": ["alice"],
                    "data": {"channelId": "c1"},
                },
            )
            assert response.status_code == 200
            assert response.json() == {"queued": 1}
            assert ws.receive_json() == {"type": "receiveChannelCreate", "data": {"channelId": "c1"}}

    def test_invalid_event_rejected(self, client, gateway):
        response = client.post("/internal/events", json={"kind": "receiveMessage"})
        assert response.status_code == 422
        assert gateway.metrics.get_snapshot()["bridge"]["invalid"] == 1

    def test_internal_token_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "internal_api_token", "s3cret")
        event = {"kind": "receiveFriendRequest", "user_ids": ["bob"], "data": {}}

        assert client.post("/internal/events", json=event).status_code == 401
        response = client.post("/internal/events", json=event, headers={"X-Internal-Token": "s3cret"})
        assert response.status_code == 200
        assert response.json() == {"queued": 0}
