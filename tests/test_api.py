"""
Tests for the HTTP API.

The app runs without a chat client configured, so the connection starts
in fallback (simulation) mode.

Tests cover:
- Health and readiness
- Status and pairing endpoints
- Message listing and manual injection
- Logout
- Groups, error log and config
- CORS and metrics
"""

import pytest


def send(client, content="hi", path="/api/send-message", **fields):
    body = {"content": content}
    body.update(fields)
    response = client.post(path, json=body)
    assert response.status_code == 200
    return response.json()


class TestHealth:
    """Test health endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["uptime"].endswith("s")
        assert data["timestamp"].endswith("Z")

    def test_health_ok_regardless_of_connection(self, client):
        client.post("/api/logout")

        assert client.get("/health").status_code == 200

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_request_id_header(self, client):
        response = client.get("/health")

        assert "X-Request-ID" in response.headers


class TestStatus:
    """Test status and pairing endpoints."""

    @pytest.mark.parametrize("path", ["/status", "/api/status"])
    def test_status_in_fallback_mode(self, client, path):
        response = client.get(path)

        assert response.status_code == 200
        data = response.json()
        assert data["phase"] == "Connected"
        assert data["is_ready"] is True
        assert data["mode"] == "simulation"
        assert data["pairing"]["available"] is False
        assert data["storage"] == {"type": "file", "connected": True}
        assert data["statistics"]["total_messages"] == 0
        assert data["statistics"]["success_rate"] == 100.0

    def test_status_counts_messages(self, client):
        send(client, "one")
        send(client, "two")

        stats = client.get("/api/status").json()["statistics"]
        assert stats["total_messages"] == 2
        assert stats["monitored_messages"] == 2

    def test_qr_code_when_connected(self, client):
        response = client.get("/api/qr-code")

        assert response.status_code == 200
        assert response.json()["status"] == "already_connected"
        assert "qr" not in response.json()

    def test_qr_code_when_pairing(self, client):
        from group_monitor.events import PairingRequired

        runtime = client.app.state.runtime
        client.post("/api/logout")
        runtime.controller.handle_event(PairingRequired(payload="2@pairing-code"))

        data = client.get("/api/qr-code").json()
        assert data["status"] == "qr_ready"
        assert data["qr"] == "2@pairing-code"

    def test_qr_code_generating(self, client):
        client.post("/api/logout")

        assert client.get("/api/qr-code").json()["status"] == "generating"


class TestMessages:
    """Test message listing and manual injection."""

    def test_empty(self, client):
        response = client.get("/api/messages")

        assert response.status_code == 200
        assert response.json() == []

    def test_send_message_stores(self, client):
        data = send(client, "hi", author="Alice", group_name="G1", group_id="G1")

        assert data["status"] == "ok"
        assert data["result"] == "created"
        assert data["data"]["author"] == "Alice"
        assert data["data"]["source_message_id"].startswith("sim_")

        messages = client.get("/api/messages", params={"limit": 1}).json()
        assert len(messages) == 1
        assert messages[0]["author"] == "Alice"
        assert messages[0]["status"] == "received"
        assert messages[0]["group_name"] == "G1"

    def test_simulate_alias(self, client):
        data = send(client, "from dashboard", path="/simulate", author="Bob", group="Ops")

        assert data["result"] == "created"
        assert data["data"]["group_name"] == "Ops"

    def test_defaults(self, client):
        data = send(client, "anonymous")

        assert data["data"]["author"] == "Unknown"
        assert data["data"]["group_name"] == "Unknown Group"

    def test_newest_first_and_limit(self, client):
        for n in range(5):
            send(client, f"message {n}")

        messages = client.get("/api/messages", params={"limit": 3}).json()
        assert [m["content"] for m in messages] == ["message 4", "message 3", "message 2"]

    def test_limit_validation(self, client):
        assert client.get("/api/messages", params={"limit": 0}).status_code == 422


class TestLogout:
    """Test logout."""

    def test_logout_always_succeeds(self, client):
        response = client.post("/api/logout")

        assert response.status_code == 200
        assert response.json()["success"] is True

        status = client.get("/api/status").json()
        assert status["phase"] == "Disconnected"
        assert status["is_ready"] is False

    def test_logout_when_client_logout_fails(self, client):
        class BrokenClient:
            async def logout(self):
                raise RuntimeError("session gone")

            async def destroy(self):
                pass

        client.app.state.runtime.controller.attach_client(BrokenClient())

        response = client.post("/api/logout")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert client.get("/api/status").json()["phase"] == "Disconnected"


class TestGroups:
    """Test group endpoints."""

    def test_upsert_and_list(self, client):
        client.post("/api/groups", json={"group_id": "G1", "name": "Old"})
        response = client.post("/api/groups", json={"group_id": "G1", "name": "New"})

        assert response.status_code == 200
        groups = client.get("/api/groups").json()
        assert len(groups) == 1
        assert groups[0]["name"] == "New"
        assert groups[0]["is_active"] is True

    def test_deactivate_group(self, client):
        client.post("/api/groups", json={"group_id": "G1", "name": "One"})
        client.post("/api/groups", json={"group_id": "G2", "name": "Two"})

        response = client.put("/api/groups/G1", json={"is_active": False})

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        active = client.get("/api/groups", params={"active_only": True}).json()
        assert [g["group_id"] for g in active] == ["G2"]

    def test_deactivate_unknown_group(self, client):
        response = client.put("/api/groups/nope", json={"is_active": False})

        assert response.status_code == 404


class TestErrorsAndConfig:
    """Test the error log and config endpoints."""

    def test_startup_error_logged(self, client):
        errors = client.get("/api/errors").json()

        assert errors[0]["context"] == "client_initialization"
        assert "No chat client configured" in errors[0]["message"]

    def test_config_roundtrip(self, client):
        assert client.get("/api/config/target").status_code == 404

        response = client.put("/api/config/target", json={"value": {"group_id": "G1"}})
        assert response.status_code == 200

        data = client.get("/api/config/target").json()
        assert data == {"key": "target", "value": {"group_id": "G1"}}

    def test_config_null_value_is_set(self, client):
        response = client.put("/api/config/paused", json={"value": None})
        assert response.status_code == 200

        response = client.get("/api/config/paused")

        assert response.status_code == 200
        assert response.json() == {"key": "paused", "value": None}


class TestCorsAndMetrics:
    """Test CORS handling and the metrics endpoint."""

    def test_options_short_circuits(self, client):
        response = client.options("/api/messages")

        assert response.status_code == 200

    def test_preflight(self, client):
        response = client.options(
            "/api/send-message",
            headers={
                "Origin": "http://dashboard.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_preflight_with_custom_header(self, client):
        response = client.options(
            "/api/send-message",
            headers={
                "Origin": "http://dashboard.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "X-Api-Key, Content-Type",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["access-control-allow-headers"] == "X-Api-Key, Content-Type"

    def test_preflight_with_unlisted_method(self, client):
        response = client.options(
            "/api/groups/G1",
            headers={
                "Origin": "http://dashboard.example",
                "Access-Control-Request-Method": "PATCH",
            },
        )

        assert response.status_code == 200

    def test_cors_header_on_get(self, client):
        response = client.get("/health", headers={"Origin": "http://dashboard.example"})

        assert response.headers["access-control-allow-origin"] == "*"

    def test_metrics(self, client):
        send(client, "count me")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "ingestion_outcomes_total" in response.text
        assert 'result="created"' in response.text
