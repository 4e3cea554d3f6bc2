"""
tests/test_organizations.py -- Integration tests for /api/organization.

Covers creation, listing, membership visibility, invitations (including the
email content) and acceptance rules.
"""

from __future__ import annotations

import pytest


def _create(client, headers, name="Acme", slug="acme"):
    return client.post("/api/organization/create", json={"name": name, "slug": slug}, headers=headers)


@pytest.fixture
def owner(make_user):
    return make_user(email="owner@example.com", name="Owner")


@pytest.fixture
def owner_headers(owner, auth_headers):
    return auth_headers(owner)


@pytest.fixture
def org_id(env, owner_headers) -> int:
    return _create(env.client, owner_headers).json()["id"]


class TestCreateAndList:
    def test_create_makes_caller_owner(self, env, owner, owner_headers) -> None:
        resp = _create(env.client, owner_headers)
        assert resp.status_code == 200
        org = resp.json()
        assert org["slug"] == "acme"

        members = env.client.get(f"/api/organization/{org['id']}/members", headers=owner_headers).json()
        assert [(m["user_id"], m["role"]) for m in members] == [(owner.id, "owner")]

    def test_list_only_own_organizations(self, env, make_user, auth_headers, owner_headers, org_id) -> None:
        assert [o["id"] for o in env.client.get("/api/organization/list", headers=owner_headers).json()] == [org_id]
        stranger = auth_headers(make_user(email="stranger@example.com"))
        assert env.client.get("/api/organization/list", headers=stranger).json() == []

    def test_duplicate_slug(self, env, owner_headers, org_id) -> None:
        resp = _create(env.client, owner_headers, name="Other")
        assert resp.status_code == 409
        assert resp.json()["error"]["message"] == "Cette organisation existe déjà."

    @pytest.mark.parametrize("slug", ["Acme", "-acme", "acme-", "a b", ""])
    def test_bad_slug(self, env, owner_headers, slug: str) -> None:
        assert _create(env.client, owner_headers, slug=slug).status_code == 400

    def test_non_member_sees_not_found(self, env, make_user, auth_headers, org_id) -> None:
        stranger = auth_headers(make_user(email="stranger@example.com"))
        hidden = env.client.get(f"/api/organization/{org_id}/members", headers=stranger)
        missing = env.client.get("/api/organization/9999/members", headers=stranger)
        assert hidden.status_code == missing.status_code == 404
        assert hidden.content == missing.content

    def test_anonymous_gets_json_401(self, env) -> None:
        resp = env.client.get("/api/organization/list")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"


class TestInvitations:
    def _invite(self, env, headers, org_id, email="bob@example.com", role="member"):
        return env.client.post(
            f"/api/organization/{org_id}/invite", json={"email": email, "role": role}, headers=headers
        )

    def test_invite_sends_escaped_email(self, env, owner, owner_headers) -> None:
        env.store.update_user(owner.id, name="<b>Mallory</b>")
        org_id = _create(env.client, owner_headers, name="<script>x</script>").json()["id"]

        resp = self._invite(env, owner_headers, org_id)
        assert resp.status_code == 200
        invitation = resp.json()
        assert invitation["status"] == "pending"
        assert invitation["email"] == "bob@example.com"

        sent = env.mailer.outbox[-1]
        assert sent.to == "bob@example.com"
        assert "<script>" not in sent.html
        assert "&lt;script&gt;" in sent.html
        assert "&lt;b&gt;Mallory&lt;/b&gt;" in sent.html
        assert f"/organisations?invitation={invitation['id']}" in sent.text

    def test_plain_member_cannot_invite(self, env, make_user, auth_headers, owner_headers, org_id) -> None:
        bob = make_user(email="bob@example.com")
        invitation_id = self._invite(env, owner_headers, org_id).json()["id"]
        bob_headers = auth_headers(bob)
        env.client.post(f"/api/organization/invitations/{invitation_id}/accept", headers=bob_headers)

        resp = self._invite(env, bob_headers, org_id, email="carol@example.com")
        assert resp.status_code == 403

    def test_owner_role_cannot_be_invited(self, env, owner_headers, org_id) -> None:
        assert self._invite(env, owner_headers, org_id, role="owner").status_code == 400

    def test_invalid_email(self, env, owner_headers, org_id) -> None:
        resp = self._invite(env, owner_headers, org_id, email="nope")
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Adresse email invalide."

    def test_mail_failure_keeps_invitation(self, env, owner_headers, org_id) -> None:
        env.mailer.fail = True
        resp = self._invite(env, owner_headers, org_id)
        assert resp.status_code == 200
        assert env.store.get_invitation(resp.json()["id"]) is not None

    def test_accept(self, env, make_user, auth_headers, owner_headers, org_id) -> None:
        bob = make_user(email="bob@example.com")
        invitation_id = self._invite(env, owner_headers, org_id, role="admin").json()["id"]
        bob_headers = auth_headers(bob)

        resp = env.client.post(f"/api/organization/invitations/{invitation_id}/accept", headers=bob_headers)
        assert resp.status_code == 200
        assert resp.json()["role"] == "admin"
        assert [o["id"] for o in env.client.get("/api/organization/list", headers=bob_headers).json()] == [org_id]

        again = env.client.post(f"/api/organization/invitations/{invitation_id}/accept", headers=bob_headers)
        assert again.status_code == 400
        assert again.json()["error"]["message"] == "Invitation invalide ou expirée."

    def test_accept_requires_matching_email(self, env, make_user, auth_headers, owner_headers, org_id) -> None:
        invitation_id = self._invite(env, owner_headers, org_id).json()["id"]
        eve = auth_headers(make_user(email="eve@example.com"))
        resp = env.client.post(f"/api/organization/invitations/{invitation_id}/accept", headers=eve)
        assert resp.status_code == 400

    def test_unknown_invitation(self, env, make_user, auth_headers) -> None:
        headers = auth_headers(make_user())
        assert env.client.post("/api/organization/invitations/9999/accept", headers=headers).status_code == 400


class TestActiveOrganization:
    def test_set_and_clear(self, env, owner_headers, org_id) -> None:
        resp = env.client.post("/api/organization/set-active", json={"organization_id": org_id}, headers=owner_headers)
        assert resp.status_code == 200
        assert resp.json()["active_organization_id"] == org_id

        resp = env.client.post("/api/organization/set-active", json={"organization_id": None}, headers=owner_headers)
        assert resp.json()["active_organization_id"] is None

    def test_persists_on_the_session(self, env, owner, org_id) -> None:
        session, token = env.backend.create_session(owner)
        headers = {"Authorization": f"Bearer {token}"}
        env.client.post("/api/organization/set-active", json={"organization_id": org_id}, headers=headers)
        assert env.store.get_session(session.id).active_organization_id == org_id
        data = env.client.get("/api/auth/get-session", headers=headers).json()
        assert data["session"]["active_organization_id"] == org_id

    def test_non_member_refused(self, env, make_user, auth_headers, org_id) -> None:
        stranger = auth_headers(make_user(email="stranger@example.com"))
        resp = env.client.post("/api/organization/set-active", json={"organization_id": org_id}, headers=stranger)
        assert resp.status_code == 404
