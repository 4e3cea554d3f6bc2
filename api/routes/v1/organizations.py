"""
api/routes/v1/organizations.py -- Organization endpoints (mounted at /api/organization).

Routes:
  POST /api/organization/create                      -- create; caller becomes owner
  GET  /api/organization/list                        -- organizations the caller belongs to
  GET  /api/organization/{id}/members                -- members (members only)
  POST /api/organization/{id}/invite                 -- invite by email (owner/admin only)
  POST /api/organization/invitations/{id}/accept     -- accept an invitation addressed to the caller
  POST /api/organization/set-active                  -- set or clear the session's active organization

Security:
  Non-members get "Organization not found" for an existing organization, so
  ids cannot be probed. Invitation emails pass every interpolated value
  through sanitize_html. A failed invitation email does not cancel the
  invitation; the failure is logged.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from api.models import (
    InvitationCreate,
    InvitationResponse,
    MemberResponse,
    OrganizationCreate,
    OrganizationResponse,
    SessionResponse,
    SetActiveOrganizationRequest,
)
from api.responses import auth_error_response, error_response
from auth.backend import AuthBackend, AuthError
from auth.dependencies import get_current_session, get_current_user
from auth.mailer import EmailMessageOptions, Mailer
from auth.models import Invitation, User
from core.config import get_settings
from core.messages import map_error_message
from core.security import is_valid_email, sanitize_html

logger = logging.getLogger("authgate.api")

router = APIRouter()


def _backend(request: Request) -> AuthBackend:
    return request.app.state.auth_backend


def render_invitation_email(invitation: Invitation, organization_name: str, inviter: User) -> EmailMessageOptions:
    inviter_label = inviter.name or inviter.email
    subject = "Invitation à rejoindre une organisation - AuthGate"
    link = f"{get_settings().base_url.rstrip('/')}/organisations?invitation={invitation.id}"
    html = f"""<!DOCTYPE html>
<html lang="fr">
<head><meta charset="UTF-8"><title>{sanitize_html(subject)}</title></head>
<body style="font-family:sans-serif;color:#333;max-width:600px;margin:0 auto;padding:20px">
  <p>Bonjour,</p>
  <p>{sanitize_html(inviter_label)} vous invite à rejoindre
     <strong>{sanitize_html(organization_name)}</strong>
     en tant que {sanitize_html(invitation.role)}.</p>
  <p><a href="{sanitize_html(link)}">Voir l'invitation</a></p>
  <p>Cette invitation expire dans 48 heures.</p>
</body>
</html>"""
    text = (
        f"{inviter_label} vous invite à rejoindre {organization_name} en tant que {invitation.role}.\n"
        f"Voir l'invitation : {link}\n\n"
        "Cette invitation expire dans 48 heures."
    )
    return EmailMessageOptions(to=invitation.email, subject=subject, html=html, text=text)


@router.post("/create", response_model=OrganizationResponse)
async def create_organization(request: Request, body: OrganizationCreate, user: User = Depends(get_current_user)):
    try:
        org = await run_in_threadpool(_backend(request).create_organization, user, body.name, body.slug)
    except AuthError as exc:
        return auth_error_response(exc)
    return OrganizationResponse.from_org(org)


@router.get("/list", response_model=list[OrganizationResponse])
async def list_organizations(request: Request, user: User = Depends(get_current_user)) -> list[OrganizationResponse]:
    orgs = await run_in_threadpool(_backend(request).list_organizations, user)
    return [OrganizationResponse.from_org(o) for o in orgs]


@router.get("/{organization_id}/members", response_model=list[MemberResponse])
async def list_members(request: Request, organization_id: int, user: User = Depends(get_current_user)):
    try:
        members = await run_in_threadpool(_backend(request).list_members, user, organization_id)
    except AuthError as exc:
        return auth_error_response(exc)
    return [MemberResponse.from_member(m) for m in members]


@router.post("/{organization_id}/invite", response_model=InvitationResponse)
async def invite_member(
    request: Request,
    organization_id: int,
    body: InvitationCreate,
    user: User = Depends(get_current_user),
):
    if not is_valid_email(body.email):
        return error_response(400, "invalid_email", map_error_message("Invalid email"))
    backend = _backend(request)
    try:
        invitation = await run_in_threadpool(
            backend.invite_member, user, organization_id, body.email, body.role.value
        )
    except AuthError as exc:
        return auth_error_response(exc)

    org = await run_in_threadpool(backend.get_organization, organization_id)
    mailer: Mailer = request.app.state.mailer
    result = await mailer.send_email(render_invitation_email(invitation, org.name, user))
    if not result.success:
        logger.warning("Invitation email not delivered: invitation_id=%s code=%s", invitation.id, result.error_code)
    return InvitationResponse.from_invitation(invitation)


@router.post("/invitations/{invitation_id}/accept", response_model=MemberResponse)
async def accept_invitation(request: Request, invitation_id: int, user: User = Depends(get_current_user)):
    try:
        member = await run_in_threadpool(_backend(request).accept_invitation, user, invitation_id)
    except AuthError as exc:
        return auth_error_response(exc)
    return MemberResponse.from_member(member)


@router.post("/set-active", response_model=SessionResponse)
async def set_active_organization(
    request: Request,
    body: SetActiveOrganizationRequest,
    user: User = Depends(get_current_user),
):
    """Select the organization the current session works in. Members only."""
    session = get_current_session(request)
    try:
        session = await run_in_threadpool(
            _backend(request).set_active_organization, user, session, body.organization_id
        )
    except AuthError as exc:
        return auth_error_response(exc)
    return SessionResponse.from_session(session)
