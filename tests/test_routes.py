import hashlib

from flask import request

from mission_control.factory import create_app
from mission_control.systems.auth_system import generate_token, is_authorized
from mission_control.systems.health_monitor import health_monitor
from mission_control.systems.integrity_system import integrity_system

from conftest import TEST_CONFIG, FakeResponse, FakeSession, signed_payload


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


# --- Integrity endpoints ---

def test_heartbeat_is_signed_and_stamped(client):
    response = client.get("/api/ghost/heartbeat")
    assert response.status_code == 200

    data = response.get_json()
    assert data["verified"] is True
    assert data["signature"].endswith(":k1")
    assert data["heartbeat"]["deployment"] == "deploy-123"
    assert data["heartbeat"]["region"] == "eu-west-1"
    assert "metrics" in data["heartbeat"]

    assert response.headers["X-Deployment-ID"] == "deploy-123"
    assert response.headers["X-Region-ID"] == "eu-west-1"
    assert response.headers["X-Content-SHA256"] == hashlib.sha256(response.data).hexdigest()
    assert response.headers["X-Canary-Deployment"] == "true"
    assert response.headers["X-Canary-Percent"] == "25"
    assert response.headers["X-RateLimit-Limit"] == "20"
    assert response.headers["X-Request-ID"]


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-abc123"})
    assert response.headers["X-Request-ID"] == "req-abc123"


def test_badge_tracks_fuse(client):
    response = client.get("/api/ghost/badge.svg")
    assert response.status_code == 200
    assert response.headers["Content-Type"] == "image/svg+xml"
    assert response.headers["Cache-Control"] == "public, max-age=30"
    assert b"Outage" in response.data

    client.get("/api/ghost/heartbeat")
    assert b"Operational" in client.get("/api/ghost/badge.svg").data


def test_proof_page(client):
    response = client.get("/api/ghost/proof")
    assert response.status_code == 200
    assert response.headers["Content-Type"].startswith("text/html")
    assert response.headers["Cache-Control"] == "no-cache"
    assert b"deploy-123" in response.data
    assert response.headers["X-Content-SHA256"] == hashlib.sha256(response.data).hexdigest()


def test_public_endpoint_burst_is_rejected(client):
    for _ in range(5):
        assert client.get("/api/ghost/heartbeat").status_code == 200

    response = client.get("/api/ghost/heartbeat")
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "1"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert response.get_json()["retryAfter"] == 1


def test_public_quota_recovers_after_burst_window(client, clock):
    for _ in range(5):
        client.get("/api/ghost/heartbeat")
    clock.advance(1000)
    assert client.get("/api/ghost/heartbeat").status_code == 200


def test_forwarded_headers_do_not_open_fresh_buckets(client):
    for i in range(5):
        headers = {"X-Forwarded-For": f"10.0.0.{i}", "CF-Connecting-IP": f"10.1.0.{i}"}
        assert client.get("/api/ghost/heartbeat", headers=headers).status_code == 200

    response = client.get("/api/ghost/heartbeat", headers={"X-Forwarded-For": "10.0.0.99"})
    assert response.status_code == 429


def test_trusted_proxy_hop_keys_clients_on_forwarded_address(store, clock, pager, http_session):
    app = create_app(
        config_overrides=dict(TEST_CONFIG, PROXY_TRUSTED_HOPS=1),
        store=store, pager=pager, http_session=http_session, clock=clock,
    )
    client = app.test_client()
    for _ in range(5):
        client.get("/api/ghost/heartbeat", headers={"X-Forwarded-For": "203.0.113.7"})

    assert client.get("/api/ghost/heartbeat", headers={"X-Forwarded-For": "203.0.113.7"}).status_code == 429
    assert client.get("/api/ghost/heartbeat", headers={"X-Forwarded-For": "203.0.113.8"}).status_code == 200


def test_rollback_requires_auth(client):
    assert client.post("/api/ghost/rollback").status_code == 401
    assert client.post("/api/ghost/rollback", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.post("/api/ghost/rollback", headers={"Authorization": "Bearer forged"}).status_code == 401


def test_rollback_with_api_key(client, api_headers):
    response = client.post("/api/ghost/rollback", headers=api_headers)
    assert response.status_code == 200
    checkpoint_id = response.get_json()["checkpointId"]
    assert integrity_system.get_checkpoint(checkpoint_id).deployment == "deploy-123"


def test_rollback_with_bearer_token(client):
    token = generate_token("operator", secret_key="test-secret")
    response = client.post("/api/ghost/rollback", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200


def test_rollback_store_outage(client, store, api_headers):
    store.fail_writes = True
    response = client.post("/api/ghost/rollback", headers=api_headers)
    assert response.status_code == 503
    assert integrity_system.audit_failures >= 1


def test_audit_log_lists_requests(client, clock, api_headers):
    client.get("/api/ghost/heartbeat")
    clock.advance(10)
    client.post("/api/ghost/rollback", headers=api_headers)

    response = client.get("/api/ghost/audit?limit=500", headers=api_headers)
    assert response.status_code == 200
    data = response.get_json()
    assert data["limit"] == 100
    actions = [entry["action"] for entry in data["audit_entries"]]
    assert "checkpoint.create" in actions
    assert data["audit_entries"][-1]["resource"] == "/api/ghost/heartbeat"


def test_audit_log_survives_malformed_entries(client, store, clock, api_headers):
    client.get("/api/ghost/heartbeat")
    clock.advance(10)
    store.put(f"audit:{clock.now}:broken", b"{not json")

    response = client.get("/api/ghost/audit", headers=api_headers)
    assert response.status_code == 200
    assert response.get_json()["count"] == 1


def test_audit_log_requires_auth(client):
    assert client.get("/api/ghost/audit").status_code == 401


# --- API surface ---

def test_api_health_requires_auth(client, api_headers):
    assert client.get("/api/health").status_code == 401

    response = client.get("/api/health", headers=api_headers)
    assert response.status_code == 200
    assert response.get_json()["status"] == "healthy"
    assert response.headers["X-RateLimit-Limit"] == "100"


def test_unimplemented_api_paths(client, api_headers):
    assert client.get("/api/users").status_code == 401
    assert client.get("/api/users", headers=api_headers).status_code == 501
    assert client.delete("/api/users/7", headers=api_headers).status_code == 501


def test_unknown_path_is_json_404(client):
    response = client.get("/nowhere")
    assert response.status_code == 404
    assert response.get_json()["error"] == "Not Found"


# --- Monitor endpoints ---

def test_manual_check(client, http_session, api_headers):
    assert client.get("/api/monitor/check", headers=api_headers).status_code == 400

    http_session.outcomes = [FakeResponse(200, signed_payload(integrity_system))]
    response = client.get("/api/monitor/check?target=https://edge.example.com/hb", headers=api_headers)
    assert response.status_code == 200
    assert response.get_json()["success"] is True

    http_session.outcomes = [FakeResponse(502, {})]
    response = client.get("/api/monitor/check?target=https://edge.example.com/hb", headers=api_headers)
    assert response.status_code == 503
    assert response.get_json()["error_kind"] == "http"


def test_manual_check_with_malformed_signature(client, http_session, api_headers):
    http_session.outcomes = [FakeResponse(200, {"heartbeat": {}, "signature": 123, "verified": True})]
    response = client.get("/api/monitor/check?target=https://edge.example.com/hb", headers=api_headers)
    assert response.status_code == 503
    assert response.get_json()["error_kind"] == "signature"


def test_monitor_history(client, http_session, api_headers):
    http_session.outcomes = [FakeResponse(500, {})]
    for _ in range(4):
        health_monitor.monitor("https://edge.example.com/hb")

    response = client.get("/api/monitor/history?target=https://edge.example.com/hb", headers=api_headers)
    data = response.get_json()
    assert data["target"] == "edge.example.com"
    assert data["count"] == 4
    assert data["alerting"] is True


def test_monitor_paging_through_app(app, http_session, pager):
    http_session.outcomes = [FakeResponse(500, {})] * 4 + [FakeResponse(200, signed_payload(integrity_system))]
    for _ in range(5):
        health_monitor.monitor("https://edge.example.com/hb")
    assert [key for key, _, _ in pager.triggers] == ["ghost-recon-edge.example.com"]
    assert pager.resolves == ["ghost-recon-edge.example.com"]


# --- Status ---

def test_backend_status(client):
    response = client.get("/api/backend-status")
    assert response.status_code == 200
    data = response.get_json()
    assert data["systemHealthy"] is True
    for name in ("store", "admission", "integrity", "monitor", "auth"):
        assert name in data


def test_backend_status_reports_store_outage(client, store):
    store.fail_reads = True
    response = client.get("/api/backend-status")
    assert response.status_code == 503
    assert response.get_json()["store"]["healthy"] is False


# --- CLI ---

def test_healthcheck_command(app):
    result = app.test_cli_runner().invoke(args=["healthcheck"])
    assert result.exit_code == 0
    assert "store" in result.output


def test_healthcheck_command_fails_when_store_is_down(app, store):
    store.fail_reads = True
    result = app.test_cli_runner().invoke(args=["healthcheck"])
    assert result.exit_code == 1


def test_monitor_tick_command_without_targets(app):
    result = app.test_cli_runner().invoke(args=["monitor-tick"])
    assert result.exit_code == 0
    assert "No MONITOR_TARGETS configured." in result.output


def test_is_authorized(app):
    token = generate_token("operator", secret_key="test-secret")
    cases = [
        ({}, False),
        ({"X-API-Key": "test-api-key"}, True),
        ({"X-API-Key": "nope"}, False),
        ({"Authorization": f"Bearer {token}"}, True),
        ({"Authorization": "Bearer nope"}, False),
    ]
    for headers, expected in cases:
        with app.test_request_context("/", headers=headers):
            assert is_authorized(request) is expected


def test_monitor_tick_command_reports_every_target(store, clock, pager):
    session = FakeSession([RuntimeError("tick exploded")])
    app = create_app(
        config_overrides=dict(TEST_CONFIG, MONITOR_TARGETS=["https://a.example.com/hb", "https://b.example.com/hb"]),
        store=store, pager=pager, http_session=session, clock=clock,
    )
    result = app.test_cli_runner().invoke(args=["monitor-tick"])
    assert result.exit_code == 0
    assert "FAIL  https://a.example.com/hb: tick exploded" in result.output
    assert "FAIL  https://b.example.com/hb: tick exploded" in result.output


def test_wsgi_entry_point_builds_the_app():
    import wsgi

    assert wsgi.app.name == "mission_control.factory"
    assert "kv_store" in wsgi.app.extensions
