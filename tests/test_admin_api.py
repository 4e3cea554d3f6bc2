"""
tests/test_admin_api.py -- Integration tests for /api/admin.

Covers listing, role changes, bans (with and without a duration) and the
rule that an admin cannot ban or demote their own account.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest


@pytest.fixture
def admin(make_user):
    return make_user(email="root@example.com", role="admin", name="Root")


@pytest.fixture
def admin_headers(admin, auth_headers):
    return auth_headers(admin)


def test_list_users(env, make_user, admin_headers) -> None:
    make_user()
    resp = env.client.get("/api/admin/users", headers=admin_headers)
    assert resp.status_code == 200
    emails = [u["email"] for u in resp.json()]
    assert emails == ["alice@example.com", "root@example.com"]
    assert all("hashed_password" not in u for u in resp.json())


def test_anonymous_redirected_by_gate(env) -> None:
    resp = env.client.get("/api/admin/users")
    assert resp.status_code == 302
    assert resp.headers["location"].startswith("/connexion?redirect=")


class TestRoles:
    def test_promote_and_demote(self, env, make_user, admin_headers) -> None:
        user = make_user()
        resp = env.client.post(f"/api/admin/users/{user.id}/role", json={"role": "admin"}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["role"] == "admin"
        assert env.store.get_by_id(user.id).role == "admin"

        resp = env.client.post(f"/api/admin/users/{user.id}/role", json={"role": "user"}, headers=admin_headers)
        assert resp.json()["role"] == "user"

    def test_unknown_role_rejected(self, env, make_user, admin_headers) -> None:
        user = make_user()
        resp = env.client.post(f"/api/admin/users/{user.id}/role", json={"role": "owner"}, headers=admin_headers)
        assert resp.status_code == 400

    def test_cannot_demote_self(self, env, admin, admin_headers) -> None:
        resp = env.client.post(f"/api/admin/users/{admin.id}/role", json={"role": "user"}, headers=admin_headers)
        assert resp.status_code == 403
        assert env.store.get_by_id(admin.id).role == "admin"

    def test_unknown_user(self, env, admin_headers) -> None:
        resp = env.client.post("/api/admin/users/9999/role", json={"role": "admin"}, headers=admin_headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == "Utilisateur introuvable."


class TestBans:
    def test_ban_revokes_sessions(self, env, make_user, auth_headers, admin_headers) -> None:
        user = make_user()
        user_headers = auth_headers(user)
        assert env.client.get("/api/auth/get-session", headers=user_headers).json() is not None

        resp = env.client.post(
            f"/api/admin/users/{user.id}/ban", json={"reason": "spam"}, headers=admin_headers
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["banned"] is True
        assert data["ban_reason"] == "spam"
        assert data["ban_expires"] is None
        assert env.client.get("/api/auth/get-session", headers=user_headers).json() is None

    def test_ban_with_duration(self, env, make_user, admin_headers) -> None:
        user = make_user()
        resp = env.client.post(
            f"/api/admin/users/{user.id}/ban", json={"expires_in": 3600}, headers=admin_headers
        )
        expires = datetime.fromisoformat(resp.json()["ban_expires"])
        assert expires > datetime.now(timezone.utc)

    def test_duration_below_one_minute_rejected(self, env, make_user, admin_headers) -> None:
        user = make_user()
        resp = env.client.post(f"/api/admin/users/{user.id}/ban", json={"expires_in": 30}, headers=admin_headers)
        assert resp.status_code == 400
        assert env.store.get_by_id(user.id).banned is False

    def test_cannot_ban_self(self, env, admin, admin_headers) -> None:
        resp = env.client.post(f"/api/admin/users/{admin.id}/ban", json={}, headers=admin_headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "Accès refusé."

    def test_unban(self, env, make_user, admin_headers) -> None:
        user = make_user()
        env.backend.ban_user(user.id, "spam")
        resp = env.client.post(f"/api/admin/users/{user.id}/unban", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["banned"] is False
        assert resp.json()["ban_reason"] is None

    def test_unban_unknown_user(self, env, admin_headers) -> None:
        assert env.client.post("/api/admin/users/9999/unban", headers=admin_headers).status_code == 404


def test_docs_are_admin_only(env, make_user, auth_headers, admin_headers) -> None:
    assert env.client.get("/docs", headers=admin_headers).status_code == 200
    assert env.client.get("/docs", headers=auth_headers(make_user())).status_code == 403
    assert env.client.get("/docs").status_code == 401
