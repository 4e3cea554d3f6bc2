"""
tests/test_health.py -- Integration tests for GET /api/health.

Covers:
  - 200 response with status, version, database and mail fields
  - database reported unavailable when the store cannot be reached
  - no authentication required, no rate limit
"""

from __future__ import annotations

from api.main import VERSION


def test_health_returns_status_fields(env):
    resp = env.client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": VERSION, "database": "ok", "mail": "console"}


def test_health_reports_unreachable_database(env, monkeypatch):
    def broken():
        raise RuntimeError("unable to open database file")

    monkeypatch.setattr(env.store, "ping", broken)
    data = env.client.get("/api/health").json()
    assert data["status"] == "degraded"
    assert data["database"] == "unavailable"
    assert "unable" not in str(data)


def test_health_no_auth_required(env):
    """Health endpoint is accessible without any credentials, even garbage ones."""
    resp = env.client.get("/api/health", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 200
