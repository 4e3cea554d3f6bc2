"""
api/routes/v1/auth.py -- Authentication REST endpoints (mounted at /api/auth).

Routes:
  POST /api/auth/sign-up/email                  -- register; sets session cookie
  POST /api/auth/sign-in/email                  -- password sign-in by email
  POST /api/auth/sign-in/username               -- password sign-in by username
  POST /api/auth/sign-out                       -- revoke session; clear cookie
  GET  /api/auth/get-session                    -- current user + session, or null
  POST /api/auth/email-otp/send-verification-otp -- request a code (any purpose)
  POST /api/auth/sign-in/email-otp              -- sign in with a code
  POST /api/auth/email-otp/verify-email         -- verify an address with a code
  POST /api/auth/forget-password/email-otp      -- request a password-reset code
  POST /api/auth/email-otp/reset-password       -- set a new password with a code

Security:
  [H2] Sign-in and code endpoints are rate-limited per IP (slowapi) on top of
       the per (email, purpose) limits inside the OTP policy.
  [C1] Password failures always produce the single mapped credentials
       message with 401, whichever part was wrong.
  [O1] Code requests answer with the same body whether or not the address
       has an account. Code failures answer with the same body whatever the
       cause.
  [M5] Cache-Control: no-store on every response that sets or clears a
       session cookie.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_limit, otp_send_limit, otp_verify_limit
from api.models import (
    ForgetPasswordRequest,
    MessageResponse,
    OtpVerifyRequest,
    ResetPasswordRequest,
    SendOtpRequest,
    SessionInfoResponse,
    SessionResponse,
    SignInEmailRequest,
    SignInResponse,
    SignInUsernameRequest,
    SignUpRequest,
    UserResponse,
)
from api.responses import auth_error_response, error_response, no_store, policy_error_response
from auth.backend import AuthBackend, AuthError
from auth.dependencies import get_current_session, try_get_current_user
from auth.models import OtpPurpose, Session, User
from auth.otp import OtpPolicy, OtpResult
from auth.tokens import clear_session_cookie, set_session_cookie
from core.messages import get_success_message, map_error_message
from core.security import is_valid_email, validate_password, validate_username

logger = logging.getLogger("authgate.api")

# Auth policy:
# - every route here is public; get-session and sign-out read the optional
#   session resolved by the request gate.
router = APIRouter()


def _client(request: Request) -> tuple[Optional[str], Optional[str]]:
    ip = request.client.host if request.client else None
    return ip, request.headers.get("User-Agent")


def _signed_in(user: User, token: str, message: str) -> JSONResponse:
    resp = JSONResponse(
        content=SignInResponse(message=message, user=UserResponse.from_user(user)).model_dump(),
    )
    set_session_cookie(resp, token)
    return no_store(resp)


def _policy_response(result: OtpResult) -> JSONResponse:
    if not result.success:
        return policy_error_response(result)
    return JSONResponse(content=MessageResponse(message=result.message).model_dump())


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/sign-up/email", response_model=SignInResponse)
@limiter.limit(login_limit)
async def sign_up_email(request: Request, body: SignUpRequest) -> JSONResponse:
    """Register with email and password, open a session, send a verification code.

    All password and username violations are reported together. A failure to
    deliver the verification code does not undo the registration; the user
    can request another code from /verification-email.
    """
    email = body.email.lower()
    if not is_valid_email(email):
        return error_response(400, "invalid_email", map_error_message("Invalid email"))

    violations = list(validate_password(body.password).violations)
    if body.username:
        violations.extend(validate_username(body.username).violations)
    if violations:
        return error_response(400, "invalid_credentials_format", map_error_message("Weak password"), violations)

    backend: AuthBackend = request.app.state.auth_backend
    try:
        user = await run_in_threadpool(backend.sign_up, email, body.password, body.name, body.username)
    except AuthError as exc:
        return auth_error_response(exc)

    ip, user_agent = _client(request)
    _session, token = await run_in_threadpool(backend.create_session, user, ip, user_agent)

    policy: OtpPolicy = request.app.state.otp_policy
    sent = await policy.request_otp(email, OtpPurpose.email_verification)
    if not sent.success:
        logger.warning("Verification code not sent after sign-up: user_id=%s", user.id)

    return _signed_in(user, token, get_success_message("signup-verify"))


# ---------------------------------------------------------------------------
# Password sign-in
# ---------------------------------------------------------------------------


def _password_sign_in(request: Request, sign_in, identifier: str, password: str) -> JSONResponse:
    try:
        user = sign_in(identifier, password)
    except AuthError as exc:
        return no_store(auth_error_response(exc))
    ip, user_agent = _client(request)
    _session, token = request.app.state.auth_backend.create_session(user, ip, user_agent)
    logger.info("Password sign-in: user_id=%s", user.id)
    return _signed_in(user, token, get_success_message("signin"))


@router.post("/sign-in/email", response_model=SignInResponse)
@limiter.limit(login_limit)  # [H2]
def sign_in_email(request: Request, body: SignInEmailRequest) -> JSONResponse:
    """Password sign-in by email. Runs in the threadpool (bcrypt is blocking)."""
    backend: AuthBackend = request.app.state.auth_backend
    return _password_sign_in(request, backend.sign_in_with_password, body.email, body.password)


@router.post("/sign-in/username", response_model=SignInResponse)
@limiter.limit(login_limit)  # [H2]
def sign_in_username(request: Request, body: SignInUsernameRequest) -> JSONResponse:
    backend: AuthBackend = request.app.state.auth_backend
    return _password_sign_in(request, backend.sign_in_with_username, body.username, body.password)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.post("/sign-out", response_model=MessageResponse)
async def sign_out(request: Request, session: Optional[Session] = Depends(get_current_session)) -> JSONResponse:
    """Revoke the current session (if any) and clear the cookie. Always 200."""
    if session is not None:
        await run_in_threadpool(request.app.state.auth_backend.revoke_session, session.id)
    resp = JSONResponse(content=MessageResponse(message=get_success_message("signout")).model_dump())
    clear_session_cookie(resp)
    return no_store(resp)


@router.get("/get-session", response_model=Optional[SessionInfoResponse])
async def get_session(
    user: Optional[User] = Depends(try_get_current_user),
    session: Optional[Session] = Depends(get_current_session),
) -> Optional[SessionInfoResponse]:
    if user is None or session is None:
        return None
    return SessionInfoResponse(user=UserResponse.from_user(user), session=SessionResponse.from_session(session))


# ---------------------------------------------------------------------------
# One-time codes [O1]
# ---------------------------------------------------------------------------


@router.post("/email-otp/send-verification-otp", response_model=MessageResponse)
@limiter.limit(otp_send_limit)
async def send_verification_otp(request: Request, body: SendOtpRequest) -> JSONResponse:
    result = await request.app.state.otp_policy.request_otp(body.email, body.type)
    return _policy_response(result)


@router.post("/forget-password/email-otp", response_model=MessageResponse)
@limiter.limit(otp_send_limit)
async def forget_password_otp(request: Request, body: ForgetPasswordRequest) -> JSONResponse:
    result = await request.app.state.otp_policy.request_otp(body.email, OtpPurpose.password_reset)
    return _policy_response(result)


@router.post("/sign-in/email-otp", response_model=SignInResponse)
@limiter.limit(otp_verify_limit)
async def sign_in_email_otp(request: Request, body: OtpVerifyRequest) -> JSONResponse:
    ip, user_agent = _client(request)
    result = await request.app.state.otp_policy.verify_otp(body.email, body.otp, OtpPurpose.sign_in, ip, user_agent)
    if not result.success:
        return no_store(policy_error_response(result))
    return _signed_in(result.user, result.token, result.message)


@router.post("/email-otp/verify-email", response_model=MessageResponse)
@limiter.limit(otp_verify_limit)
async def verify_email_otp(request: Request, body: OtpVerifyRequest) -> JSONResponse:
    result = await request.app.state.otp_policy.verify_otp(body.email, body.otp, OtpPurpose.email_verification)
    return _policy_response(result)


@router.post("/email-otp/reset-password", response_model=MessageResponse)
@limiter.limit(otp_verify_limit)
async def reset_password_otp(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    result = await request.app.state.otp_policy.reset_password(body.email, body.otp, body.password)
    return no_store(_policy_response(result))
