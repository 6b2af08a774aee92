import pytest
from fastapi.testclient import TestClient

from apps.codespaces.app import app


@pytest.fixture
def client(make_container):
    # No `with`: startup would launch the background monitoring loop.
    app.state.container = make_container({"database": True, "redis": False})
    return TestClient(app)


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok", "service": "codespaces-orchestrator"}


def test_status(client):
    body = client.get("/v1/infrastructure/status").json()

    assert body["exit_code"] == 0
    assert [entry["component"] for entry in body["report"]] == ["Docker", "Network", "Volumes", "Infrastructure"]


def test_invalid_action_is_bad_request(client, calls):
    resp = client.post("/v1/infrastructure/destroy", json={"force": True})

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid action: destroy"
    assert calls == []


def test_unconfirmed_action_is_cancelled(client, calls):
    body = client.post("/v1/infrastructure/stop", json={}).json()

    assert body["cancelled"] is True
    assert body["messages"] == ["Operation cancelled."]
    assert calls == []


def test_confirmed_start(client, calls):
    body = client.post("/v1/infrastructure/start", json={"confirmed": True}).json()

    assert body["success"] is True
    assert body["environment"]["lifecycle_state"] == "running"
    assert len(calls) == 3


def test_health_endpoints(client):
    report = client.get("/v1/health/services").json()
    single = client.get("/v1/health/services/unknown").json()

    assert report["database"]["healthy"] is True
    assert report["redis"]["healthy"] is False
    assert single["details"] == "No health check defined for service: unknown"


def test_manual_rollback_without_role_is_forbidden(client, alerts):
    resp = client.post("/v1/rollback/trigger", json={"trigger": "manual"})

    assert resp.status_code == 403
    assert alerts.sent == []


def test_manual_rollback_with_role(client, alerts):
    resp = client.post(
        "/v1/rollback/trigger",
        json={"trigger": "manual", "reason": "bad deploy"},
        headers={"X-Codespaces-Role": "admin"},
    )

    assert resp.status_code == 200
    assert resp.json()["fired"] is True
    executions = client.get("/v1/rollback/executions").json()
    assert len(executions) == 1
    assert executions[0]["reason"] == "bad deploy"
    assert len(alerts.sent) == 1


def test_metric_trigger_needs_a_value(client):
    resp = client.post("/v1/rollback/trigger", json={"trigger": "error_rate_threshold"})

    assert resp.status_code == 400


def test_health_trigger_is_not_accepted(client):
    resp = client.post("/v1/rollback/trigger", json={"trigger": "health_check_failure"})

    assert resp.status_code == 400


def test_metrics_endpoint(client):
    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert "codespaces_orchestrator_actions_total" in resp.text
