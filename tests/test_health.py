"""
tests/test_health.py -- Integration tests for GET /api/v1/health.
"""

from __future__ import annotations


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    client, _token, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert data["components"] == {"app": "ok", "database": "ok"}


def test_health_warms_connection_flag(api_client):
    """A successful probe leaves the warm-connection flag in the state cache."""
    client, _, _ = api_client
    client.get("/api/v1/health")
    assert client.app.state.state_cache.get("db:connection:status") == "connected"


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
