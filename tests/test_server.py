"""End-to-end tests for the FastAPI signaling surface."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List

from fastapi.testclient import TestClient

from conftest import OFFER

from switchboard.api.server import create_app
from switchboard.config import IceSettings


def receive_until(websocket, predicate: Callable[[Dict[str, Any]], bool], limit: int = 50) -> Dict[str, Any]:
    for _ in range(limit):
        message = websocket.receive_json()
        if predicate(message):
            return message
    raise AssertionError("expected message never arrived")


def receive_id(websocket, message_id: str) -> Dict[str, Any]:
    return receive_until(websocket, lambda message: message.get("id") == message_id)


def register(websocket, name: str) -> None:
    websocket.send_json({"id": "register", "name": name})
    assert receive_id(websocket, "registerResponse")["response"] == "accepted"


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def drain(websocket) -> List[Dict[str, Any]]:
    """Collect pending messages, using an appConfig round trip as the end marker."""
    websocket.send_json({"id": "appConfig"})
    collected = []
    while True:
        message = websocket.receive_json()
        if message.get("id") == "appConfigResponse":
            return collected
        collected.append(message)


def test_health_and_missing_user() -> None:
    with TestClient(create_app(ice=IceSettings())) as client:
        assert client.get("/healthz").json() == {"status": "ok", "users": 0, "calls": 0}
        assert client.get("/users/ghost/status").json() == {"name": "ghost", "status": "offline"}
        assert client.delete("/users/ghost").status_code == 404


def test_app_config_over_websocket() -> None:
    with TestClient(create_app(ice=IceSettings())) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"id": "appConfig", "type": "browser"})
            reply = receive_id(ws, "appConfigResponse")

    assert reply["result"] == "SUCCESS"
    assert reply["params"]["pc_config"]["iceServers"] == reply["iceServers"]
    assert "credential" in reply["iceServers"][1]


def test_call_round_trip_over_websockets() -> None:
    app = create_app(ice=IceSettings())
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            register(alice, "alice")
            register(bob, "bob")

            users = client.get("/users").json()["users"]
            assert users == [
                {"name": "alice", "status": "online"},
                {"name": "bob", "status": "online"},
            ]

            alice.send_json({"id": "call", "from": "alice", "to": "bob", "sdpOffer": OFFER})
            assert receive_id(bob, "incomingCall") == {"id": "incomingCall", "from": "alice"}

            bob.send_json(
                {"id": "incomingCallResponse", "callResponse": "accept", "from": "alice", "sdpOffer": OFFER}
            )
            assert receive_id(bob, "startCommunication")["sdpAnswer"].startswith("v=0")
            answer = receive_id(alice, "callResponse")
            assert answer["response"] == "accepted"
            assert answer["sdpAnswer"].startswith("v=0")

            receive_until(
                alice,
                lambda message: message.get("id") == "responseOnlineStatus"
                and message.get("message") == "bob"
                and message.get("response") == "busy",
            )
            assert client.get("/healthz").json()["calls"] == 1
            assert client.get("/users/alice/status").json()["status"] == "busy"

            bob.send_json({"id": "stop"})
            assert receive_id(alice, "stopCommunication") == {"id": "stopCommunication"}
            receive_until(
                alice,
                lambda message: message.get("id") == "responseOnlineStatus"
                and message.get("message") == "bob"
                and message.get("response") == "online",
            )
            assert client.get("/healthz").json()["calls"] == 0
            assert client.get("/users/bob/status").json()["status"] == "online"


def test_disconnect_removes_user() -> None:
    app = create_app(ice=IceSettings())
    coordinator = app.state.coordinator
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as alice:
            register(alice, "alice")
            with client.websocket_connect("/ws") as bob:
                register(bob, "bob")
                wait_for(lambda: len(coordinator.registry) == 2)
            wait_for(lambda: len(coordinator._connections) == 1)

            pending = drain(alice)
            offline = [
                message
                for message in pending
                if message.get("id") == "responseOnlineStatus" and message.get("response") == "offline"
            ]
            assert [message["message"] for message in offline] == ["bob"]
            assert [message for message in pending if message.get("id") == "registeredUsers"][-1][
                "response"
            ] == ["alice"]
            assert client.get("/users").json()["users"] == [{"name": "alice", "status": "online"}]
