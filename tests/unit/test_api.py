"""Tests for the HTTP service."""

import time
import pytest
from pathlib import Path
from tempfile import TemporaryDirectory

from fastapi.testclient import TestClient

from costgate.config.settings import Settings
from costgate.core.scopes import BudgetScope, BudgetWindow, ScopeKind
from costgate.pipeline.runtime import CostPipeline
from costgate.server.app import create_app

PROJECT = BudgetScope(ScopeKind.PROJECT, "search")

CHECK_BODY = {
    "scope": {"owner": "alice", "project": "search"},
    "provider": "openai",
    "model": "gpt-4o",
    "input_units": 1_000_000,
    "max_output_units": 100_000,
}


@pytest.fixture
def pipeline():
    """Pipeline on a temporary database with a 10.00 daily project limit."""
    with TemporaryDirectory() as tmpdir:
        settings = Settings(
            database_path=str(Path(tmpdir) / "api.db"),
            token_estimation_mode="heuristic",
            enforcement_timeout_ms=5000,
            bus_backoff_min_seconds=0.001,
            bus_backoff_max_seconds=0.01,
        )
        pipeline = CostPipeline.from_settings(settings)
        pipeline.ledger.set_limit(PROJECT, BudgetWindow.DAILY, 10.0)
        yield pipeline


@pytest.fixture
def client(pipeline):
    with TestClient(create_app(pipeline)) as client:
        yield client


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def _daily_spend(client):
    body = client.get("/v1/budgets/project/search").json()
    return next(w["spend"] for w in body["windows"] if w["window"] == "daily")


def test_health(client):
    """Test the health endpoint."""
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["bus_running"] is True


def test_check_allows_request(client):
    """Test a request within budget is allowed with its estimated cost."""
    response = client.post("/v1/check", json=CHECK_BODY)

    assert response.status_code == 200
    body = response.json()
    assert body["allowed"] is True
    assert body["estimated_cost"] == pytest.approx(3.50)


def test_check_denies_with_429(client, pipeline):
    """Test a denied check returns 429 naming the scope and window."""
    pipeline.ledger.set_limit(PROJECT, BudgetWindow.DAILY, 3.0)

    response = client.post("/v1/check", json=CHECK_BODY)

    assert response.status_code == 429
    body = response.json()
    assert body["allowed"] is False
    assert body["reason"] == "limit_exceeded"
    assert body["scope"] == "project:search"
    assert body["window"] == "daily"
    assert body["limit"] == 3.0


def test_check_requires_a_scope(client):
    """Test an empty scope is rejected."""
    response = client.post("/v1/check", json={**CHECK_BODY, "scope": {}})

    assert response.status_code == 422


def test_empty_scope_id_is_rejected(client):
    """Test an empty scope identifier is a validation error, not a server error."""
    check = client.post("/v1/check", json={**CHECK_BODY, "scope": {"project": ""}})
    dispatched = client.post("/v1/requests/dispatched", json={
        "request_id": "req-1",
        "scope": {"owner": "", "project": "search"},
        "provider": "openai",
        "model": "gpt-4o",
        "estimated_cost": 0.25,
    })

    assert check.status_code == 422
    assert dispatched.status_code == 422


def test_completed_request_is_recorded(client, pipeline):
    """Test a completed request is accepted and processed in the background."""
    alerts = []
    pipeline.on_alert(alerts.append, "test-alerts")

    response = client.post("/v1/requests/completed", json={
        "request_id": "req-1",
        "scope": {"owner": "alice", "project": "search"},
        "provider": "openai",
        "model": "gpt-4o",
        "input_units": 3_000_000,
        "output_units": 100_000,
    })

    assert response.status_code == 202
    assert response.json()["request_id"] == "req-1"
    # 3 * 2.50 + 1.00 = 8.50 -> 85% of the daily limit
    assert _wait_for(lambda: _daily_spend(client) == pytest.approx(8.5))
    assert _wait_for(lambda: len(alerts) == 1)
    assert alerts[0].severity.label == "warning"

    sent = client.get("/v1/alerts", params={"scope": "project:search"}).json()
    assert [(a["severity"], a["window"], a["request_id"]) for a in sent] == [
        ("warning", "daily", "req-1"),
    ]
    assert sent[0]["percentage"] == pytest.approx(85.0)
    assert client.get("/v1/alerts", params={"scope": "request_owner:alice"}).json() == []

    assert _wait_for(lambda: client.get("/v1/analytics").json()["rows"] != [])
    rows = client.get("/v1/analytics", params={"dimension": "model"}).json()["rows"]
    assert rows[0]["value"] == "openai/gpt-4o"
    assert rows[0]["cost"] == pytest.approx(8.5)


def test_completed_request_rejects_negative_units(client):
    """Test invalid usage is rejected before it reaches the bus."""
    response = client.post("/v1/requests/completed", json={
        "request_id": "req-1",
        "scope": {"project": "search"},
        "provider": "openai",
        "model": "gpt-4o",
        "input_units": -1,
        "output_units": 0,
    })

    assert response.status_code == 422


def test_dispatched_request_is_accepted(client, pipeline):
    """Test dispatched requests are published to subscribers."""
    seen = []
    pipeline.on_dispatched(seen.append, "test-dispatched")

    response = client.post("/v1/requests/dispatched", json={
        "request_id": "req-9",
        "scope": {"project": "search"},
        "provider": "openai",
        "model": "gpt-4o",
        "estimated_cost": 0.25,
    })

    assert response.status_code == 202
    assert _wait_for(lambda: len(seen) == 1)
    assert seen[0].request_id == "req-9"


def test_budget_status_for_unknown_scope(client):
    """Test an unregistered scope reports zero spend and no limits."""
    body = client.get("/v1/budgets/organization/nobody").json()

    assert body["registered"] is False
    assert all(w["limit"] is None for w in body["windows"])


def test_analytics_rejects_unknown_dimension(client):
    """Test query validation."""
    assert client.get("/v1/analytics", params={"dimension": "region"}).status_code == 422


def test_dead_letters_empty(client):
    """Test the dead-letter listing."""
    response = client.get("/v1/dead-letters")

    assert response.status_code == 200
    assert response.json() == []


def test_alerts_rejects_bad_query(client):
    """Test malformed scope and window filters are rejected."""
    assert client.get("/v1/alerts").json() == []
    assert client.get("/v1/alerts", params={"scope": "search"}).status_code == 422
    assert client.get("/v1/alerts", params={"scope": "region:eu"}).status_code == 422
    assert client.get("/v1/alerts", params={"window": "per_request"}).status_code == 422
