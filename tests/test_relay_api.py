import time

from fastapi.testclient import TestClient

import relay
from conftest import SESSION_TTL_MS


def create_session(client, **body):
    body.setdefault("roomId", "room-1")
    res = client.post("/session/create", json=body)
    assert res.status_code == 200
    return res.json()


def bind(client, session_id, role, address="127.0.0.1", port=40000, **extra):
    body = {"sessionId": session_id, "role": role, "address": address, "port": port}
    body.update(extra)
    return client.post("/session/bind", json=body)


def test_health_reports_bound_udp_port(relay_client, relay_app):
    res = relay_client.get("/health")
    assert res.status_code == 200
    data = res.json()
    assert data["ok"] is True
    assert data["service"] == "noc-relay-service"
    assert data["sessions"] == 0
    assert data["udpPort"] == relay_app.state.udp_port
    assert data["udpPort"] > 0


def test_create_returns_tokens_and_relay_address(relay_client, relay_app):
    data = create_session(relay_client, publicRelayHost="relay.example.net")
    assert data["ok"] is True
    assert data["sessionId"]
    assert data["hostToken"] != data["playerToken"]
    assert data["relay"] == {"host": "relay.example.net", "udpPort": relay_app.state.udp_port}


def test_create_without_public_host(relay_client):
    assert create_session(relay_client)["relay"]["host"] is None


def test_create_uses_configured_public_host(relay_settings, clock):
    settings = relay_settings.model_copy(update={"public_host": "relay.internal"})
    with TestClient(relay.create_app(settings, clock=clock)) as client:
        assert create_session(client)["relay"]["host"] == "relay.internal"


def test_create_requires_room_id(relay_client):
    res = relay_client.post("/session/create", json={})
    assert res.status_code == 400
    assert res.json() == {"ok": False, "error": "roomId_required"}


def test_bind_flow_and_status(relay_client):
    session_id = create_session(relay_client)["sessionId"]

    status = relay_client.get("/session/status", params={"sessionId": session_id}).json()
    assert status["session"]["ready"] is False
    assert status["session"]["roomId"] == "room-1"

    res = bind(relay_client, session_id, "host", port=40001)
    assert res.json() == {"ok": True, "ready": False}
    res = bind(relay_client, session_id, "player", port=40002)
    assert res.json() == {"ok": True, "ready": True}

    session = relay_client.get("/session/status", params={"sessionId": session_id}).json()["session"]
    assert session["sessionId"] == session_id
    assert session["ready"] is True
    assert set(session) == {"sessionId", "roomId", "ready", "lastSeen", "createdAt"}


def test_bind_unknown_session(relay_client):
    res = bind(relay_client, "nope", "host")
    assert res.status_code == 404
    assert res.json()["error"] == "session_not_found"


def test_bind_invalid_role(relay_client):
    session_id = create_session(relay_client)["sessionId"]
    res = bind(relay_client, session_id, "spectator")
    assert res.status_code == 400
    assert res.json()["error"] == "invalid_role"


def test_bind_missing_fields(relay_client):
    session_id = create_session(relay_client)["sessionId"]
    for body in (
        {"sessionId": session_id, "role": "host", "address": "127.0.0.1"},
        {"sessionId": session_id, "role": "host", "port": 4000},
        {"role": "host", "address": "127.0.0.1", "port": 4000},
        {"sessionId": session_id, "role": "host", "address": "127.0.0.1", "port": "x"},
    ):
        res = relay_client.post("/session/bind", json=body)
        assert res.status_code == 400
        assert res.json()["error"] == "session_bind_fields_required"


def test_bind_port_out_of_range(relay_client):
    session_id = create_session(relay_client)["sessionId"]
    res = bind(relay_client, session_id, "host", port=70000)
    assert res.status_code == 400
    assert res.json()["error"] == "invalid_port"


def test_bind_rejects_non_ip_addresses(relay_client):
    session_id = create_session(relay_client)["sessionId"]
    for address in ("localhost", "relay.example.net", "300.1.1.1", "10.0.0"):
        res = bind(relay_client, session_id, "host", address=address)
        assert res.status_code == 400
        assert res.json() == {"ok": False, "error": "invalid_address"}


def test_bind_stores_canonical_ip(relay_client, relay_app):
    session_id = create_session(relay_client)["sessionId"]
    assert bind(relay_client, session_id, "host", address=" 2001:DB8::0001 ", port=40000).status_code == 200
    assert bind(relay_client, session_id, "player", address="10.0.0.7", port=40001).status_code == 200

    routes = relay_app.state.sessions.routes
    assert set(routes) == {("2001:db8::1", 40000), ("10.0.0.7", 40001)}


def test_empty_body_reports_missing_room_id(relay_client):
    res = relay_client.post("/session/create")
    assert res.status_code == 400
    assert res.json() == {"ok": False, "error": "roomId_required"}

    res = relay_client.post("/session/bind")
    assert res.json() == {"ok": False, "error": "session_bind_fields_required"}


def test_supplied_token_must_match_role(relay_client):
    data = create_session(relay_client)
    res = bind(relay_client, data["sessionId"], "host", token=data["playerToken"])
    assert res.status_code == 403
    assert res.json()["error"] == "invalid_token"

    res = bind(relay_client, data["sessionId"], "host", token=data["hostToken"])
    assert res.status_code == 200


def test_required_tokens(relay_settings, clock):
    settings = relay_settings.model_copy(update={"require_tokens": True})
    with TestClient(relay.create_app(settings, clock=clock)) as client:
        data = create_session(client)
        assert bind(client, data["sessionId"], "player").status_code == 403
        res = bind(client, data["sessionId"], "player", token=data["playerToken"])
        assert res.json() == {"ok": True, "ready": False}


def test_status_errors(relay_client):
    res = relay_client.get("/session/status")
    assert res.status_code == 400
    assert res.json()["error"] == "sessionId_required"

    res = relay_client.get("/session/status", params={"sessionId": "nope"})
    assert res.status_code == 404
    assert res.json()["error"] == "session_not_found"


def test_ready_is_false_once_expired(relay_client, clock):
    session_id = create_session(relay_client)["sessionId"]
    bind(relay_client, session_id, "host", port=40001)
    bind(relay_client, session_id, "player", port=40002)

    clock.advance(SESSION_TTL_MS + 1)
    res = relay_client.get("/session/status", params={"sessionId": session_id})
    assert res.status_code == 404
    assert bind(relay_client, session_id, "host", port=40003).status_code == 404


def test_bind_refreshes_last_seen(relay_client, clock):
    session_id = create_session(relay_client)["sessionId"]
    clock.advance(SESSION_TTL_MS - 1)
    bind(relay_client, session_id, "host")
    clock.advance(SESSION_TTL_MS - 1)

    res = relay_client.get("/session/status", params={"sessionId": session_id})
    assert res.status_code == 200
    assert res.json()["session"]["lastSeen"] == clock.now - (SESSION_TTL_MS - 1)


def test_handler_crash_is_reported_as_400(relay_client, relay_app, monkeypatch):
    def explode(room_id):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(relay_app.state.sessions, "create", explode)
    res = relay_client.post("/session/create", json={"roomId": "r"})
    assert res.status_code == 400
    assert res.json() == {"ok": False, "error": "store unavailable"}

    monkeypatch.undo()
    assert relay_client.get("/health").status_code == 200


def test_background_sweep_drops_expired_sessions(relay_settings, clock):
    settings = relay_settings.model_copy(update={"cleanup_interval": 0.05})
    app = relay.create_app(settings, clock=clock)
    with TestClient(app) as client:
        session_id = create_session(client)["sessionId"]
        assert bind(client, session_id, "host").status_code == 200
        assert len(app.state.sessions) == 1

        clock.advance(SESSION_TTL_MS + 1)
        deadline = time.monotonic() + 2
        while len(app.state.sessions) and time.monotonic() < deadline:
            time.sleep(0.02)

        assert len(app.state.sessions) == 0
        assert app.state.sessions.routes == {}
