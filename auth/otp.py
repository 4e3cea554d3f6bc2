"""
auth/otp.py -- One-time code issuance and verification policy.

OtpPolicy sits between the HTTP routes and the AuthBackend/Mailer pair and
owns the rules a caller can observe:

  request_otp(email, purpose)
    shape checks -> per (email, purpose) rate limit -> issue + send.
    The same code path runs whether or not the email has an account, and the
    success body is always get_success_message("otp-sent").

  verify_otp(email, code, purpose)
    shape checks -> per (email, purpose) rate limit -> backend comparison.
    Wrong, expired, exhausted and unknown all return the one message
    INVALID_OR_EXPIRED_CODE with status 400. The real cause is logged at INFO.

Security notes:
  [O1] No retries. A mail or backend call that fails or exceeds
       MAIL_TIMEOUT_SECONDS is one generic failure; resending is the user's
       decision.

  [O2] Format errors are rejected before the backend is consulted, so being
       specific about them leaks nothing about account existence.

  [O3] Email content passes through sanitize_html before interpolation.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from starlette.concurrency import run_in_threadpool

from auth.backend import AuthBackend, AuthError
from auth.mailer import EmailMessageOptions, Mailer
from auth.models import OtpOutcome, OtpPurpose, Session, User
from core.config import Settings, get_settings
from core.messages import get_success_message, map_error_message
from core.ratelimit import RateLimiter
from core.security import is_valid_email, is_valid_otp, sanitize_html, validate_password

logger = logging.getLogger("authgate.otp")

OTP_VALIDITY_TEXT = "10 minutes"

_SUBJECTS = {
    OtpPurpose.sign_in: "Code de connexion - AuthGate",
    OtpPurpose.email_verification: "Vérifiez votre adresse email - AuthGate",
    OtpPurpose.password_reset: "Réinitialisation de mot de passe - AuthGate",
}

_INTROS = {
    OtpPurpose.sign_in: "Voici votre code de connexion :",
    OtpPurpose.email_verification: "Voici votre code de vérification d'email :",
    OtpPurpose.password_reset: "Voici votre code de réinitialisation de mot de passe :",
}


@dataclass
class OtpResult:
    """Outcome of a policy call, ready to be turned into an HTTP response."""

    success: bool
    status_code: int
    message: str
    violations: list[str] = field(default_factory=list)
    # Seconds, set on 429 results.
    retry_after: Optional[int] = None
    user: Optional[User] = None
    session: Optional[Session] = None
    token: Optional[str] = None


def _fail(internal: str, status_code: int) -> OtpResult:
    return OtpResult(success=False, status_code=status_code, message=map_error_message(internal))


def _throttled(window_seconds: int) -> OtpResult:
    result = _fail("Too many requests", 429)
    result.retry_after = window_seconds
    return result


def _parse_purpose(value) -> Optional[OtpPurpose]:
    try:
        return OtpPurpose(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Email rendering
# ---------------------------------------------------------------------------


def render_otp_email(email: str, code: str, purpose: OtpPurpose) -> EmailMessageOptions:
    """Build the subject, HTML and text bodies for a code email."""
    subject = _SUBJECTS[purpose]
    safe_subject = sanitize_html(subject)
    safe_intro = sanitize_html(_INTROS[purpose])
    safe_code = sanitize_html(code)

    html = f"""<!DOCTYPE html>
<html lang="fr">
<head>
  <meta charset="UTF-8">
  <title>{safe_subject}</title>
</head>
<body style="font-family:sans-serif;color:#333;max-width:600px;margin:0 auto;padding:20px">
  <h1 style="font-size:20px">{safe_subject}</h1>
  <p>Bonjour,</p>
  <p>{safe_intro}</p>
  <div style="background:#1f4fd1;color:#fff;font-size:32px;font-weight:bold;letter-spacing:8px;
              padding:20px;border-radius:8px;text-align:center;margin:20px 0">{safe_code}</div>
  <p>Ce code est valide pendant {OTP_VALIDITY_TEXT}.</p>
  <p>Si vous n'avez pas demandé ce code, vous pouvez ignorer cet email.</p>
  <p style="margin-top:30px;color:#666;font-size:14px">AuthGate</p>
</body>
</html>"""

    text = (
        f"{subject}\n\n"
        f"Voici votre code : {code}\n\n"
        f"Ce code est valide pendant {OTP_VALIDITY_TEXT}.\n"
        "Si vous n'avez pas demandé ce code, vous pouvez ignorer cet email.\n\n"
        "AuthGate"
    )
    return EmailMessageOptions(to=email, subject=subject, html=html, text=text)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class OtpPolicy:
    def __init__(
        self,
        backend: AuthBackend,
        mailer: Mailer,
        limiter: RateLimiter,
        settings: Optional[Settings] = None,
    ) -> None:
        self.backend = backend
        self.mailer = mailer
        self.limiter = limiter
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    async def request_otp(self, email: str, purpose) -> OtpResult:
        email = (email or "").strip().lower()
        if not is_valid_email(email):
            return _fail("Invalid email", 400)
        otp_purpose = _parse_purpose(purpose)
        if otp_purpose is None:
            return _fail("Invalid OTP type", 400)

        s = self.settings
        key = f"otp:{otp_purpose.value}:{email}"
        if not self.limiter.check(key, s.otp_request_limit, s.otp_request_window_seconds):
            logger.info("OTP request throttled: purpose=%s", otp_purpose.value)
            return _throttled(s.otp_request_window_seconds)

        try:
            code = await run_in_threadpool(self.backend.issue_otp, email, otp_purpose)
            options = render_otp_email(email, code, otp_purpose)
            result = await asyncio.wait_for(self.mailer.send_email(options), timeout=s.mail_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error("OTP email timed out: purpose=%s", otp_purpose.value)
            return _fail("Unable to send verification code", 503)
        except Exception:
            logger.exception("OTP issuance failed: purpose=%s", otp_purpose.value)
            return _fail("Unable to send verification code", 503)

        if not result.success:
            logger.error("OTP email not delivered: purpose=%s code=%s", otp_purpose.value, result.error_code)
            return _fail("Unable to send verification code", 503)

        return OtpResult(success=True, status_code=200, message=get_success_message("otp-sent"))

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def _check_code(self, email: str, code: str, purpose: OtpPurpose) -> Optional[OtpResult]:
        """Run shape checks, throttling and comparison. Returns a failure or None."""
        if not is_valid_email(email):
            return _fail("Invalid email", 400)
        if not is_valid_otp(code):
            return _fail("Invalid or expired OTP", 400)

        s = self.settings
        key = f"otp-verify:{purpose.value}:{email}"
        if not self.limiter.check(key, s.otp_verify_limit, s.otp_verify_window_seconds):
            logger.info("OTP verification throttled: purpose=%s", purpose.value)
            return _throttled(s.otp_verify_window_seconds)

        outcome = await run_in_threadpool(self.backend.verify_otp, email, code, purpose)
        if outcome is not OtpOutcome.verified:
            logger.info("OTP verification failed: purpose=%s cause=%s", purpose.value, outcome.value)
            return _fail("Invalid or expired OTP", 400)
        return None

    async def verify_otp(
        self,
        email: str,
        code: str,
        purpose,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OtpResult:
        """Verify a sign-in or email-verification code.

        sign-in opens a session (creating the account on first use).
        email-verification marks the address verified. password-reset codes
        are consumed by reset_password() instead.
        """
        email = (email or "").strip().lower()
        otp_purpose = _parse_purpose(purpose)
        if otp_purpose is None or otp_purpose is OtpPurpose.password_reset:
            return _fail("Invalid OTP type", 400)

        failure = await self._check_code(email, code or "", otp_purpose)
        if failure is not None:
            return failure

        if otp_purpose is OtpPurpose.email_verification:
            user = await run_in_threadpool(self.backend.mark_email_verified, email)
            return OtpResult(success=True, status_code=200, message=get_success_message("email-verified"), user=user)

        try:
            user = await run_in_threadpool(self.backend.sign_in_with_otp, email)
        except AuthError as exc:
            return _fail(exc.message, exc.status_code)
        session, token = await run_in_threadpool(self.backend.create_session, user, ip_address, user_agent)
        return OtpResult(
            success=True,
            status_code=200,
            message=get_success_message("signin"),
            user=user,
            session=session,
            token=token,
        )

    async def reset_password(self, email: str, code: str, new_password: str) -> OtpResult:
        """Set a new password after verifying a password-reset code.

        Password rules are checked first so a weak password does not burn
        one of the code's attempts.
        """
        email = (email or "").strip().lower()
        check = validate_password(new_password or "")
        if not check.valid:
            result = _fail("Weak password", 400)
            result.violations = check.violations
            return result

        failure = await self._check_code(email, code or "", OtpPurpose.password_reset)
        if failure is not None:
            return failure

        await run_in_threadpool(self.backend.reset_password, email, new_password)
        return OtpResult(success=True, status_code=200, message=get_success_message("password-reset"))
