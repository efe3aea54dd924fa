"""Tests for the networked host (FastAPI WebSocket server)."""

from __future__ import annotations

import time

from fastapi.testclient import TestClient

from shellbridge.config import ServerConfig, ShellBridgeConfig
from shellbridge.remote.profiles import ProfileStore
from shellbridge.session.registry import Registry
from shellbridge.session.service import SessionService
from shellbridge.transport.server import create_app


def _app(registry: Registry, tmp_path, **server: object):
    config = ShellBridgeConfig(server=ServerConfig(**server))
    service = SessionService(registry, profiles=ProfileStore(tmp_path / "profiles.json"))
    return create_app(config, service)


def _invoke(ws, msg_id: int, channel: str, data: dict | None = None) -> dict:
    """Send an invoke and return its response, skipping interleaved events."""
    ws.send_json({"type": "invoke", "id": msg_id, "channel": channel, "data": data or {}})
    while True:
        message = ws.receive_json()
        if message.get("type") == "invoke-response" and message.get("id") == msg_id:
            return message


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestHealth:
    def test_health(self, registry: Registry, tmp_path) -> None:
        with TestClient(_app(registry, tmp_path, mode="gateway")) as client:
            response = client.get("/health")
            assert response.status_code == 200
            assert response.json() == {
                "status": "ok",
                "mode": "gateway",
                "clients": 0,
                "sessions": 0,
            }


class TestWebSocket:
    def test_mode_message_first(self, registry: Registry, tmp_path) -> None:
        with TestClient(_app(registry, tmp_path)) as client:
            with client.websocket_connect("/ws") as ws:
                hello = ws.receive_json()
                assert hello["type"] == "mode"
                assert hello["mode"] == "local"
                assert hello["client_id"]

    def test_requested_client_id(self, registry: Registry, tmp_path) -> None:
        with TestClient(_app(registry, tmp_path)) as client:
            with client.websocket_connect("/ws?client_id=abc123") as ws:
                assert ws.receive_json()["client_id"] == "abc123"

    def test_invoke_and_events(self, registry: Registry, tmp_path) -> None:
        with TestClient(_app(registry, tmp_path)) as client:
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()
                created = _invoke(ws, 1, "session.create", {"cols": 80, "rows": 24})
                session_id = created["result"]
                result = _invoke(
                    ws,
                    2,
                    "session.execInTerminal",
                    {"sessionId": session_id, "command": "echo over-ws"},
                )
                assert result["result"] == {"stdout": "over-ws", "exitCode": 0}

                ws.send_json(
                    {
                        "type": "send",
                        "channel": "session.write",
                        "data": {"sessionId": session_id, "data": "echo hi; printf '\\n__SHB_DONE_00000000__%d\\n' $?\r"},
                    }
                )
                seen = []
                while True:
                    message = ws.receive_json()
                    assert message["type"] == "event"
                    seen.append(message)
                    if "hi" in message["payload"].get("data", ""):
                        break
                assert seen[-1]["event"] == "data"
                assert seen[-1]["session_id"] == session_id

    def test_error_response(self, registry: Registry, tmp_path) -> None:
        with TestClient(_app(registry, tmp_path)) as client:
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()
                response = _invoke(ws, 5, "session.resize", {"sessionId": "x"})
                assert response["error"].startswith("Invalid parameters")
                assert "result" not in response

    def test_gateway_refuses_local_shell(self, registry: Registry, tmp_path) -> None:
        with TestClient(_app(registry, tmp_path, mode="gateway")) as client:
            with client.websocket_connect("/ws") as ws:
                assert ws.receive_json()["mode"] == "gateway"
                response = _invoke(ws, 1, "session.create")
                assert "local shell access is disabled" in response["error"]
        assert len(registry) == 0


class TestClientLifecycle:
    def test_sessions_closed_when_client_leaves(self, registry: Registry, tmp_path) -> None:
        with TestClient(_app(registry, tmp_path, reconnect_grace=0)) as client:
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()
                _invoke(ws, 1, "session.create")
                assert len(registry) == 1
            assert _wait_for(lambda: len(registry) == 0)

    def test_reconnect_within_grace_keeps_sessions(
        self, registry: Registry, tmp_path
    ) -> None:
        with TestClient(_app(registry, tmp_path, reconnect_grace=30)) as client:
            with client.websocket_connect("/ws?client_id=laptop") as ws:
                ws.receive_json()
                session_id = _invoke(ws, 1, "session.create")["result"]
            assert _wait_for(lambda: client.get("/health").json()["clients"] == 0)

            with client.websocket_connect("/ws?client_id=laptop") as ws:
                ws.receive_json()
                assert _invoke(ws, 2, "session.exists", {"sessionId": session_id})["result"]
                result = _invoke(
                    ws, 3, "session.execInTerminal", {"sessionId": session_id, "command": "echo back"}
                )
                assert result["result"]["stdout"] == "back"
            assert registry.exists(session_id)

    def test_other_client_cannot_drive_session(self, registry: Registry, tmp_path) -> None:
        with TestClient(_app(registry, tmp_path, reconnect_grace=30)) as client:
            with client.websocket_connect("/ws?client_id=alice") as alice:
                alice.receive_json()
                session_id = _invoke(alice, 1, "session.create")["result"]
                with client.websocket_connect("/ws?client_id=bob") as bob:
                    bob.receive_json()
                    response = _invoke(
                        bob, 1, "session.write", {"sessionId": session_id, "data": "x"}
                    )
                    assert "not owned" in response["error"]

    def test_shutdown_closes_everything(self, registry: Registry, tmp_path) -> None:
        with TestClient(_app(registry, tmp_path, reconnect_grace=30)) as client:
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()
                _invoke(ws, 1, "session.create")
                _invoke(ws, 2, "session.create")
        assert len(registry) == 0
