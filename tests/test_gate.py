"""Auth gate: token extraction priority, auth modes, role gates and socket rejection."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from warden import app as app_module
from warden.api.gate import WS_UNAUTHORIZED, AuthGate
from warden.config import AuthMode
from warden.service.results import unwrap
from warden.storage.models import Role


def _client():
    return TestClient(app_module.app)


def _login(runtime, username="scout", role=Role.PLAYER):
    unwrap(asyncio.run(runtime.credentials.register(username, "password123", role=role)))
    return unwrap(asyncio.run(runtime.credentials.login(username, "password123"))).token


def test_http_priority_cookie_over_bearer(build_runtime):
    gate = AuthGate(build_runtime().sessions, AuthMode.REQUIRED)
    assert gate.extract_http_token({"auth_token": "c"}, "Bearer b") == "c"
    assert gate.extract_http_token({}, "Bearer b") == "b"
    assert gate.extract_http_token({}, "Basic Zm9vOmJhcg==") is None
    assert gate.extract_http_token({}, "Bearer ") is None


def test_socket_query_token_is_lowest_priority(build_runtime):
    gate = AuthGate(build_runtime().sessions, AuthMode.REQUIRED)
    assert gate.extract_socket_token({}, "Bearer b", {"token": "q"}) == "b"
    assert gate.extract_socket_token({}, None, {"token": "q"}) == "q"
    strict = AuthGate(gate.sessions, AuthMode.REQUIRED, allow_query_token=False)
    assert strict.extract_socket_token({}, None, {"token": "q"}) is None


def test_resolve_per_mode(build_runtime):
    runtime = build_runtime()
    token = _login(runtime)

    required = AuthGate(runtime.sessions, AuthMode.REQUIRED)
    assert required.resolve(None).rejected is True
    assert required.resolve("garbage").rejected is True
    decision = required.resolve(token)
    assert decision.identity.username == "scout"
    assert decision.token == token

    optional = AuthGate(runtime.sessions, AuthMode.OPTIONAL)
    assert optional.resolve("garbage").rejected is False
    assert optional.resolve("garbage").identity is None
    assert optional.resolve(token).identity.role is Role.PLAYER

    disabled = AuthGate(runtime.sessions, AuthMode.DISABLED)
    assert disabled.resolve(token).identity is None
    assert disabled.resolve(None).rejected is False


def test_required_mode_rejects_anonymous_http(build_runtime):
    build_runtime()
    response = _client().get("/v1/auth/me")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"
    assert response.json()["error"]["message"] == "authentication required"


def test_garbage_bearer_reports_invalid_token(build_runtime):
    build_runtime()
    response = _client().get("/v1/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401
    assert response.json()["error"] == {
        "code": "unauthorized",
        "message": "invalid or expired token",
        "details": None,
    }


def test_bearer_and_cookie_both_authenticate(build_runtime):
    runtime = build_runtime()
    token = _login(runtime)
    client = _client()
    by_header = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert by_header.status_code == 200
    client.cookies.set("auth_token", token)
    by_cookie = client.get("/v1/auth/me")
    assert by_cookie.json()["data"]["user"]["username"] == "scout"


def test_invalid_cookie_wins_over_valid_bearer(build_runtime):
    runtime = build_runtime()
    token = _login(runtime)
    client = _client()
    client.cookies.set("auth_token", "stale-token")
    response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_optional_mode_lets_anonymous_through(build_runtime):
    build_runtime(auth_mode="optional")
    response = _client().get("/v1/auth/status", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 200
    assert response.json()["data"] == {"enabled": True, "mode": "optional", "user": None}


def test_optional_mode_require_auth_still_rejects(build_runtime):
    build_runtime(auth_mode="optional")
    assert _client().get("/v1/auth/sessions").status_code == 401


def test_disabled_mode_role_gates_are_noops(build_runtime):
    build_runtime(auth_mode="disabled")
    response = _client().get("/v1/admin/lockouts/scout")
    assert response.status_code == 200
    assert response.json()["data"]["locked"] is False


def test_role_gate(build_runtime):
    runtime = build_runtime()
    player = _login(runtime, "scout")
    admin = _login(runtime, "warden", role=Role.ADMIN)
    client = _client()

    denied = client.get("/v1/admin/lockouts/scout", headers={"Authorization": f"Bearer {player}"})
    assert denied.status_code == 403
    assert denied.json()["error"]["details"] == {"required": ["admin"]}

    allowed = client.get("/v1/admin/lockouts/scout", headers={"Authorization": f"Bearer {admin}"})
    assert allowed.status_code == 200


def test_socket_rejected_before_handshake(build_runtime):
    build_runtime()
    with pytest.raises(WebSocketDisconnect) as exc:
        with _client().websocket_connect("/v1/ws/session"):
            pass
    assert exc.value.code == WS_UNAUTHORIZED


def test_socket_rejects_invalid_query_token(build_runtime):
    build_runtime()
    with pytest.raises(WebSocketDisconnect) as exc:
        with _client().websocket_connect("/v1/ws/session?token=garbage"):
            pass
    assert exc.value.code == WS_UNAUTHORIZED


def test_socket_accepts_query_token_and_logs_out(build_runtime):
    runtime = build_runtime()
    token = _login(runtime)
    with _client().websocket_connect(f"/v1/ws/session?token={token}") as ws:
        hello = ws.receive_json()
        assert hello["type"] == "hello"
        assert hello["identity"]["username"] == "scout"
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}
        ws.send_json({"type": "logout"})
        assert ws.receive_json() == {"type": "logged_out", "revoked": True}
    assert runtime.sessions.verify(token) is None


def test_socket_bearer_header(build_runtime):
    runtime = build_runtime()
    token = _login(runtime)
    with _client().websocket_connect(
        "/v1/ws/session", headers={"Authorization": f"Bearer {token}"}
    ) as ws:
        assert ws.receive_json()["identity"]["username"] == "scout"
        ws.send_json({"type": "dance"})
        assert ws.receive_json()["type"] == "error"


def test_socket_optional_mode_admits_anonymous(build_runtime):
    build_runtime(auth_mode="optional")
    with _client().websocket_connect("/v1/ws/session?token=garbage") as ws:
        hello = ws.receive_json()
        assert hello["identity"] is None
        assert hello["mode"] == "optional"
