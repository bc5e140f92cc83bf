from __future__ import annotations

from fastapi.testclient import TestClient

from kwcoord.adapters.store.unconfigured import UnconfiguredKeyValueStore
from kwcoord.core.app_factory import create_app
from kwcoord.core.dependencies import get_store


def test_health_reports_store_and_cache():
    client = TestClient(create_app())

    resp = client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["store"] == {"configured": True, "reachable": True, "error": None}
    assert body["cache"]["pending_writes"] == 0


def test_health_degraded_without_store():
    app = create_app()
    app.dependency_overrides[get_store] = lambda: UnconfiguredKeyValueStore()
    client = TestClient(app)

    resp = client.get("/health")

    assert resp.status_code == 503
    body = resp.json()
    assert body["status"] == "degraded"
    assert body["store"]["configured"] is False
