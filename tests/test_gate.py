"""
tests/test_gate.py -- Integration tests for the request gate (api/gate.py).

Every request goes through the real ASGI stack. Coverage:
  - route tiers: admin (anonymous / non-admin / admin), private, auth pages
  - security headers on every outcome, HSTS only in production
  - internal failures: empty 500 for pages, JSON envelope for /api/
  - credentials: bad, banned and revoked tokens resolve to anonymous
"""

from __future__ import annotations

import logging
from urllib.parse import parse_qs, urlparse

import pytest

from api.gate import CONTENT_SECURITY_POLICY, HSTS_VALUE, SECURITY_HEADERS


def _assert_security_headers(resp) -> None:
    for name, value in SECURITY_HEADERS.items():
        assert resp.headers[name] == value, name


def _redirect_target(resp) -> str:
    location = urlparse(resp.headers["location"])
    assert location.path == "/connexion"
    values = parse_qs(location.query)["redirect"]
    assert len(values) == 1
    return values[0]


class TestAdminTier:
    def test_anonymous_redirected_to_sign_in(self, env) -> None:
        resp = env.client.get("/admin")
        assert resp.status_code == 302
        assert _redirect_target(resp) == "/admin"
        _assert_security_headers(resp)

    def test_non_admin_gets_bare_403(self, env, make_user, auth_headers) -> None:
        user = make_user()
        resp = env.client.get("/admin", headers=auth_headers(user))
        assert resp.status_code == 403
        assert resp.content == b""
        _assert_security_headers(resp)

    def test_non_admin_on_admin_api_gets_json_403(self, env, make_user, auth_headers) -> None:
        user = make_user()
        resp = env.client.get("/api/admin/users", headers=auth_headers(user))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert resp.json()["error"]["message"] == "Accès refusé."

    def test_admin_allowed(self, env, make_user, auth_headers) -> None:
        admin = make_user(email="root@example.com", role="admin")
        resp = env.client.get("/admin", headers=auth_headers(admin))
        assert resp.status_code == 200
        _assert_security_headers(resp)

    def test_prefix_covers_sub_paths(self, env) -> None:
        resp = env.client.get("/admin/users/1/whatever")
        assert resp.status_code == 302
        assert _redirect_target(resp) == "/admin/users/1/whatever"


class TestPrivateAndAuthPages:
    @pytest.mark.parametrize("path", ["/dashboard", "/profil", "/organisations"])
    def test_private_requires_session(self, env, path: str) -> None:
        resp = env.client.get(path)
        assert resp.status_code == 302
        assert _redirect_target(resp) == path

    def test_private_allowed_with_session(self, env, make_user, auth_headers) -> None:
        resp = env.client.get("/dashboard", headers=auth_headers(make_user()))
        assert resp.status_code == 200

    @pytest.mark.parametrize("path", ["/connexion", "/inscription", "/mot-de-passe-oublie"])
    def test_auth_pages_redirect_signed_in_users(self, env, make_user, auth_headers, path: str) -> None:
        resp = env.client.get(path, headers=auth_headers(make_user()))
        assert resp.status_code == 302
        assert resp.headers["location"] == "/dashboard"
        _assert_security_headers(resp)

    def test_auth_pages_open_to_anonymous(self, env) -> None:
        assert env.client.get("/connexion").status_code == 200

    def test_public_paths_pass_through(self, env) -> None:
        resp = env.client.get("/")
        assert resp.status_code == 200
        _assert_security_headers(resp)


class TestCredentials:
    def test_garbage_token_is_anonymous(self, env) -> None:
        resp = env.client.get("/dashboard", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 302

    def test_cookie_is_accepted(self, env, make_user) -> None:
        _session, token = env.backend.create_session(make_user())
        env.client.cookies.set("authgate_session", token)
        assert env.client.get("/dashboard").status_code == 200

    def test_banned_user_session_is_dead(self, env, make_user, auth_headers) -> None:
        user = make_user()
        headers = auth_headers(user)
        env.store.update_user(user.id, banned=True)
        assert env.client.get("/dashboard", headers=headers).status_code == 302

    def test_revoked_session_is_dead(self, env, make_user) -> None:
        session, token = env.backend.create_session(make_user())
        env.backend.revoke_session(session.id)
        resp = env.client.get("/dashboard", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 302

    def test_expired_session_is_dead(self, env, make_user, settings, monkeypatch) -> None:
        monkeypatch.setattr(settings, "session_expire_seconds", -1)
        _session, token = env.backend.create_session(make_user())
        resp = env.client.get("/dashboard", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 302


class TestHeaders:
    def test_csp_forbids_framing_and_inline_script(self) -> None:
        assert "frame-ancestors 'none'" in CONTENT_SECURITY_POLICY
        assert "script-src 'self';" in CONTENT_SECURITY_POLICY
        assert "unsafe-inline" not in CONTENT_SECURITY_POLICY

    def test_no_hsts_outside_production(self, env) -> None:
        assert "Strict-Transport-Security" not in env.client.get("/").headers

    def test_hsts_in_production(self, env, settings, monkeypatch) -> None:
        production = settings.model_copy(update={"environment": "production"})
        monkeypatch.setattr("api.gate.get_settings", lambda: production)
        resp = env.client.get("/")
        assert resp.headers["Strict-Transport-Security"] == HSTS_VALUE

    def test_headers_on_404_and_api(self, env) -> None:
        resp = env.client.get("/nope")
        assert resp.status_code == 404
        _assert_security_headers(resp)
        _assert_security_headers(env.client.get("/api/health"))


class TestInternalErrors:
    @pytest.fixture
    def broken_backend(self, env, monkeypatch):
        def boom(token):
            raise RuntimeError("database is locked: /var/lib/authgate.db")

        monkeypatch.setattr(env.backend, "resolve_session", boom)

    def test_page_failure_is_bare_500(self, env, broken_backend, caplog) -> None:
        with caplog.at_level(logging.ERROR, logger="authgate.gate"):
            resp = env.client.get("/dashboard", headers={"Authorization": "Bearer x"})
        assert resp.status_code == 500
        assert resp.content == b""
        _assert_security_headers(resp)
        assert any(r.exc_info for r in caplog.records)

    def test_api_failure_is_generic_envelope(self, env, broken_backend) -> None:
        resp = env.client.get("/api/auth/get-session", headers={"Authorization": "Bearer x"})
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "internal_error"
        assert "locked" not in resp.text

    def test_anonymous_requests_skip_resolution(self, env, broken_backend) -> None:
        assert env.client.get("/").status_code == 200
