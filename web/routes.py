"""
web/routes.py -- Jinja2 template routes for the AuthGate web UI.

These routes serve server-rendered HTML in French. They share app.state with
the API routes (same auth backend, OTP policy, mailer) and apply the same
policies: every failure shown on a page is a mapped, static message.

Access control is done by the request gate (api/gate.py) before any handler
here runs: auth pages redirect signed-in users, private pages redirect
anonymous users to /connexion?redirect=<path>, /admin answers 403 to
non-admins. Handlers only read request.state.user.

Routes:
  GET  /                                  -- home
  GET  /connexion                         -- sign-in (password or email code)
  POST /connexion                         -- password sign-in (email or username)
  POST /connexion/code                    -- request a sign-in code
  POST /connexion/verification            -- sign in with a code
  GET  /inscription                       -- sign-up form
  POST /inscription                       -- create account, send verification code
  GET  /mot-de-passe-oublie               -- request a reset code
  POST /mot-de-passe-oublie               -- send reset code, show reset form
  POST /mot-de-passe-oublie/reinitialiser -- set a new password with the code
  GET  /verification-email                -- verify an address
  POST /verification-email/envoyer        -- send a verification code
  POST /verification-email                -- submit the code
  POST /deconnexion                       -- revoke session, clear cookie
  GET  /dashboard                         -- signed-in landing page
  GET  /profil                            -- account details
  GET  /organisations                     -- my organizations, create form, invitations
  POST /organisations                     -- create an organization
  POST /organisations/invitations/{id}    -- accept an invitation
  GET  /admin                             -- user administration
  POST /admin/users/{id}/role             -- change role
  POST /admin/users/{id}/ban              -- ban
  POST /admin/users/{id}/unban            -- lift ban

Security:
  [M3] ?error= and ?message= query values are looked up in fixed tables and
       never rendered themselves.
  [C2] Post-sign-in redirects accept only relative paths (_safe_next).
  [M5] Responses that set or clear the session cookie carry no-store.
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_limit, otp_send_limit, otp_verify_limit
from auth.backend import AuthBackend, AuthError
from auth.dependencies import try_get_current_user
from auth.models import OtpPurpose, User
from auth.tokens import clear_session_cookie, set_session_cookie
from core.messages import get_success_message, map_error_message
from core.security import is_valid_email, validate_password, validate_username

logger = logging.getLogger("authgate.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
# layout.html calls this directly so every handler does not have to pass
# the current user in its context.
templates.env.globals["try_get_current_user"] = try_get_current_user
router = APIRouter()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Whitelist for ?error= [M3]. Values are core.messages keys.
_ERROR_KEYS: dict[str, str] = {
    "session_expired": "Authentication required",
    "invalid_invitation": "Invalid invitation",
    "forbidden": "Forbidden",
}

# Whitelist for ?message= [M3]. Values are get_success_message() kinds.
_NOTICE_KINDS = frozenset(
    {"signout", "password-reset", "email-verified", "organization-created", "invitation-accepted", "signup-verify"}
)


def _safe_next(next_url: Optional[str], default: str = "/dashboard") -> str:
    """Validate a post-sign-in redirect target. Only accept relative paths. [C2]

    Rejects absolute URLs and protocol-relative ("//host") or backslash
    ("/\\host") forms that browsers treat as off-site.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith(("//", "/\\")):
        return next_url
    return default


def _banner(request: Request) -> dict:
    error_key = _ERROR_KEYS.get(request.query_params.get("error", ""))
    kind = request.query_params.get("message", "")
    return {
        "error_msg": map_error_message(error_key) if error_key else None,
        "notice_msg": get_success_message(kind) if kind in _NOTICE_KINDS else None,
    }


def _render(request: Request, name: str, context: Optional[dict] = None, status_code: int = 200) -> HTMLResponse:
    ctx = _banner(request)
    ctx.update(context or {})
    return templates.TemplateResponse(request, name, ctx, status_code=status_code)


def _client(request: Request) -> tuple[Optional[str], Optional[str]]:
    return (request.client.host if request.client else None), request.headers.get("User-Agent")


def _start_session(request: Request, user: User, target: str) -> RedirectResponse:
    backend: AuthBackend = request.app.state.auth_backend
    ip, user_agent = _client(request)
    _session, token = backend.create_session(user, ip, user_agent)
    resp = RedirectResponse(target, status_code=302)
    set_session_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _current(request: Request) -> User:
    """The gate guarantees a user on private routes."""
    return try_get_current_user(request)


# ---------------------------------------------------------------------------
# Public pages
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def index(request: Request) -> HTMLResponse:
    return _render(request, "index.html")


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------


@router.get("/connexion", response_class=HTMLResponse)
def sign_in_form(request: Request) -> HTMLResponse:
    return _render(request, "connexion.html", {"redirect": _safe_next(request.query_params.get("redirect"))})


@router.post("/connexion", response_class=HTMLResponse)
@limiter.limit(login_limit)
def sign_in_post(
    request: Request,
    identifier: str = Form(...),
    password: str = Form(...),
    redirect: Optional[str] = Form(default=None),
):
    """Password sign-in. An identifier containing "@" is an email, otherwise a username."""
    backend: AuthBackend = request.app.state.auth_backend
    identifier = identifier.strip()
    try:
        if "@" in identifier:
            user = backend.sign_in_with_password(identifier, password)
        else:
            user = backend.sign_in_with_username(identifier, password)
    except AuthError as exc:
        return _render(
            request,
            "connexion.html",
            {"error_msg": map_error_message(exc), "redirect": _safe_next(redirect)},
            status_code=exc.status_code,
        )
    return _start_session(request, user, _safe_next(redirect))


@router.post("/connexion/code", response_class=HTMLResponse)
@limiter.limit(otp_send_limit)
async def sign_in_code_request(
    request: Request,
    email: str = Form(...),
    redirect: Optional[str] = Form(default=None),
):
    result = await request.app.state.otp_policy.request_otp(email, OtpPurpose.sign_in)
    context = {"redirect": _safe_next(redirect), "otp_email": email.strip().lower()}
    if not result.success:
        context["error_msg"] = result.message
        context["otp_email"] = None
        return _render(request, "connexion.html", context, status_code=result.status_code)
    context["notice_msg"] = result.message
    return _render(request, "connexion.html", context)


@router.post("/connexion/verification", response_class=HTMLResponse)
@limiter.limit(otp_verify_limit)
async def sign_in_code_verify(
    request: Request,
    email: str = Form(...),
    otp: str = Form(...),
    redirect: Optional[str] = Form(default=None),
):
    ip, user_agent = _client(request)
    result = await request.app.state.otp_policy.verify_otp(email, otp.strip(), OtpPurpose.sign_in, ip, user_agent)
    if not result.success:
        return _render(
            request,
            "connexion.html",
            {"error_msg": result.message, "otp_email": email.strip().lower(), "redirect": _safe_next(redirect)},
            status_code=result.status_code,
        )
    resp = RedirectResponse(_safe_next(redirect), status_code=302)
    set_session_cookie(resp, result.token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Sign-up
# ---------------------------------------------------------------------------


@router.get("/inscription", response_class=HTMLResponse)
def sign_up_form(request: Request) -> HTMLResponse:
    return _render(request, "inscription.html")


@router.post("/inscription", response_class=HTMLResponse)
@limiter.limit(login_limit)
async def sign_up_post(
    request: Request,
    name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
    username: Optional[str] = Form(default=None),
):
    email = email.strip().lower()
    username = (username or "").strip() or None
    form = {"name": name, "email": email, "username": username or ""}

    if not is_valid_email(email):
        return _render(request, "inscription.html", {"form": form, "error_msg": map_error_message("Invalid email")}, 400)
    violations = list(validate_password(password).violations)
    if username:
        violations.extend(validate_username(username).violations)
    if password != confirm_password:
        violations.append("Les mots de passe ne correspondent pas")
    if violations:
        return _render(request, "inscription.html", {"form": form, "violations": violations}, 400)

    backend: AuthBackend = request.app.state.auth_backend
    try:
        user = await run_in_threadpool(backend.sign_up, email, password, name.strip(), username)
    except AuthError as exc:
        return _render(request, "inscription.html", {"form": form, "error_msg": map_error_message(exc)}, exc.status_code)

    sent = await request.app.state.otp_policy.request_otp(email, OtpPurpose.email_verification)
    if not sent.success:
        logger.warning("Verification code not sent after sign-up: user_id=%s", user.id)
    return await run_in_threadpool(_start_session, request, user, "/verification-email?message=signup-verify")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.get("/mot-de-passe-oublie", response_class=HTMLResponse)
def forgot_password_form(request: Request) -> HTMLResponse:
    return _render(request, "mot_de_passe_oublie.html")


@router.post("/mot-de-passe-oublie", response_class=HTMLResponse)
@limiter.limit(otp_send_limit)
async def forgot_password_post(request: Request, email: str = Form(...)):
    """Send a reset code. The page shown next is the same whether or not the account exists."""
    result = await request.app.state.otp_policy.request_otp(email, OtpPurpose.password_reset)
    if not result.success:
        return _render(request, "mot_de_passe_oublie.html", {"error_msg": result.message}, result.status_code)
    return _render(
        request,
        "mot_de_passe_oublie.html",
        {"notice_msg": result.message, "reset_email": email.strip().lower()},
    )


@router.post("/mot-de-passe-oublie/reinitialiser", response_class=HTMLResponse)
@limiter.limit(otp_verify_limit)
async def reset_password_post(
    request: Request,
    email: str = Form(...),
    otp: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
):
    context = {"reset_email": email.strip().lower()}
    if password != confirm_password:
        context["violations"] = ["Les mots de passe ne correspondent pas"]
        return _render(request, "mot_de_passe_oublie.html", context, 400)
    result = await request.app.state.otp_policy.reset_password(email, otp.strip(), password)
    if not result.success:
        context.update({"error_msg": result.message, "violations": result.violations})
        return _render(request, "mot_de_passe_oublie.html", context, result.status_code)
    resp = RedirectResponse("/connexion?message=password-reset", status_code=302)
    clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.get("/verification-email", response_class=HTMLResponse)
def verify_email_form(request: Request) -> HTMLResponse:
    user = try_get_current_user(request)
    return _render(request, "verification_email.html", {"verify_email": user.email if user else ""})


@router.post("/verification-email/envoyer", response_class=HTMLResponse)
@limiter.limit(otp_send_limit)
async def verify_email_send(request: Request, email: str = Form(...)):
    result = await request.app.state.otp_policy.request_otp(email, OtpPurpose.email_verification)
    key = "notice_msg" if result.success else "error_msg"
    return _render(
        request,
        "verification_email.html",
        {key: result.message, "verify_email": email.strip().lower(), "code_sent": result.success},
        result.status_code,
    )


@router.post("/verification-email", response_class=HTMLResponse)
@limiter.limit(otp_verify_limit)
async def verify_email_post(request: Request, email: str = Form(...), otp: str = Form(...)):
    result = await request.app.state.otp_policy.verify_otp(email, otp.strip(), OtpPurpose.email_verification)
    if not result.success:
        return _render(
            request,
            "verification_email.html",
            {"error_msg": result.message, "verify_email": email.strip().lower(), "code_sent": True},
            result.status_code,
        )
    target = "/dashboard" if try_get_current_user(request) else "/connexion"
    return RedirectResponse(f"{target}?message=email-verified", status_code=302)


# ---------------------------------------------------------------------------
# Sign-out
# ---------------------------------------------------------------------------


@router.post("/deconnexion")
def sign_out(request: Request) -> RedirectResponse:
    """Revoke the session and clear the cookie. Works without a session too."""
    session = getattr(request.state, "session", None)
    if session is not None:
        request.app.state.auth_backend.revoke_session(session.id)
    resp = RedirectResponse("/connexion?message=signout", status_code=302)
    clear_session_cookie(resp)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Private pages
# ---------------------------------------------------------------------------


@router.get("/dashboard", response_class=HTMLResponse)
def dashboard(request: Request) -> HTMLResponse:
    user = _current(request)
    orgs = request.app.state.auth_backend.list_organizations(user)
    return _render(request, "dashboard.html", {"user": user, "session": request.state.session, "orgs": orgs})


@router.get("/profil", response_class=HTMLResponse)
def profile(request: Request) -> HTMLResponse:
    return _render(request, "profil.html", {"user": _current(request), "session": request.state.session})


@router.get("/organisations", response_class=HTMLResponse)
def organizations(request: Request) -> HTMLResponse:
    user = _current(request)
    backend: AuthBackend = request.app.state.auth_backend
    invitation_id = request.query_params.get("invitation", "")
    return _render(
        request,
        "organisations.html",
        {
            "orgs": backend.list_organizations(user),
            "invitation_id": int(invitation_id) if invitation_id.isdigit() else None,
        },
    )


@router.post("/organisations", response_class=HTMLResponse)
def organization_create(request: Request, name: str = Form(...), slug: str = Form(...)):
    user = _current(request)
    backend: AuthBackend = request.app.state.auth_backend
    name, slug = name.strip(), slug.strip().lower()
    if not name or len(name) > 100 or not slug or len(slug) > 50:
        error_msg = map_error_message("Invalid request body")
    else:
        try:
            backend.create_organization(user, name, slug)
        except AuthError as exc:
            error_msg = map_error_message(exc)
        else:
            return RedirectResponse("/organisations?message=organization-created", status_code=302)
    return _render(
        request,
        "organisations.html",
        {"orgs": backend.list_organizations(user), "error_msg": error_msg, "invitation_id": None},
        400,
    )


@router.post("/organisations/invitations/{invitation_id}")
def invitation_accept(request: Request, invitation_id: int) -> RedirectResponse:
    try:
        request.app.state.auth_backend.accept_invitation(_current(request), invitation_id)
    except AuthError:
        return RedirectResponse("/organisations?error=invalid_invitation", status_code=302)
    return RedirectResponse("/organisations?message=invitation-accepted", status_code=302)


# ---------------------------------------------------------------------------
# Admin (gate returns 403 to non-admins before these run)
# ---------------------------------------------------------------------------


@router.get("/admin", response_class=HTMLResponse)
def admin_users(request: Request) -> HTMLResponse:
    return _render(request, "admin.html", {"users": request.app.state.auth_backend.list_users()})


@router.post("/admin/users/{user_id}/role")
def admin_set_role(request: Request, user_id: int, role: str = Form(...)) -> RedirectResponse:
    admin = _current(request)
    if user_id != admin.id and role in ("user", "admin"):
        try:
            request.app.state.auth_backend.set_role(user_id, role)
        except AuthError:
            return RedirectResponse("/admin?error=forbidden", status_code=302)
    return RedirectResponse("/admin", status_code=302)


@router.post("/admin/users/{user_id}/ban")
def admin_ban(request: Request, user_id: int, reason: Optional[str] = Form(default=None)) -> RedirectResponse:
    if user_id == _current(request).id:
        return RedirectResponse("/admin?error=forbidden", status_code=302)
    try:
        request.app.state.auth_backend.ban_user(user_id, (reason or "").strip()[:500] or None)
    except AuthError:
        return RedirectResponse("/admin?error=forbidden", status_code=302)
    return RedirectResponse("/admin", status_code=302)


@router.post("/admin/users/{user_id}/unban")
def admin_unban(request: Request, user_id: int) -> RedirectResponse:
    try:
        request.app.state.auth_backend.unban_user(user_id)
    except AuthError:
        return RedirectResponse("/admin?error=forbidden", status_code=302)
    return RedirectResponse("/admin", status_code=302)
