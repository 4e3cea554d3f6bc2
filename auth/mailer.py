"""
auth/mailer.py -- Outbound email over SMTP (aiosmtplib).

Mailer.send_email() never raises for transport problems. It returns a
MailResult whose message is one of a closed set of French strings keyed by
error_code; the raw exception goes to the "authgate.mail" log only.

Flow per message:
  1. Validate options (recipient syntax, subject 1-200 chars, a text or
     html body no longer than 50 000 chars). Nothing touches the network
     on invalid input.
  2. Open a fresh connection (connect + STARTTLS/TLS + login). A connection
     failure is reported without attempting the send.
  3. Send, then close.

When SMTP is not configured (or SMTP_ENABLED=false) the message is written to
the log instead, so development works without a mail server.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Optional

import aiosmtplib

from core.config import Settings, get_settings
from core.security import is_valid_email

logger = logging.getLogger("authgate.mail")

SUBJECT_MAX_LENGTH = 200
BODY_MAX_LENGTH = 50_000

MESSAGE_SENT = "Email envoyé avec succès"
MESSAGE_CONNECTED = "Connexion SMTP établie avec succès"
MESSAGE_INVALID = "Données d'email invalides"

# Closed set: error_code -> user-safe message.
ERROR_MESSAGES: dict[str, str] = {
    "AUTH": "Échec de l'authentification SMTP",
    "TIMEOUT": "Délai d'attente dépassé",
    "NOT_FOUND": "Serveur SMTP introuvable",
    "REFUSED": "Connexion refusée par le serveur SMTP",
    "CONFIG": "Configuration SMTP incomplète",
    "INVALID": MESSAGE_INVALID,
    "UNKNOWN": "Erreur lors de l'envoi de l'email",
}


@dataclass
class EmailMessageOptions:
    to: str
    subject: str
    text: Optional[str] = None
    html: Optional[str] = None


@dataclass
class MailResult:
    success: bool
    message: str
    error_code: Optional[str] = None
    message_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _failure(error_code: str) -> MailResult:
    return MailResult(success=False, message=ERROR_MESSAGES[error_code], error_code=error_code)


def classify_smtp_error(exc: BaseException) -> str:
    """Map a transport exception onto the closed error_code set.

    aiosmtplib wraps socket errors in SMTPConnectError, so the cause chain is
    walked as well.
    """
    seen: list[BaseException] = []
    current: Optional[BaseException] = exc
    while current is not None and current not in seen:
        seen.append(current)
        current = current.__cause__ or current.__context__

    for err in seen:
        if isinstance(err, aiosmtplib.SMTPAuthenticationError):
            return "AUTH"
        if isinstance(err, (aiosmtplib.SMTPTimeoutError, TimeoutError)):
            return "TIMEOUT"
        if isinstance(err, socket.gaierror):
            return "NOT_FOUND"
        if isinstance(err, ConnectionRefusedError):
            return "REFUSED"
    return "UNKNOWN"


def validate_options(options: EmailMessageOptions) -> bool:
    if not options.to or not is_valid_email(options.to):
        return False
    if not options.subject or len(options.subject) > SUBJECT_MAX_LENGTH:
        return False
    if not options.text and not options.html:
        return False
    for body in (options.text, options.html):
        if body is not None and len(body) > BODY_MAX_LENGTH:
            return False
    return True


class Mailer:
    """SMTP client bound to one Settings instance.

    Usage:
        mailer = Mailer()
        result = await mailer.send_email(EmailMessageOptions(to=..., subject=..., text=...))
        if not result.success: ...
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    @property
    def enabled(self) -> bool:
        return self.settings.smtp_configured

    def _client(self) -> aiosmtplib.SMTP:
        s = self.settings
        return aiosmtplib.SMTP(
            hostname=s.smtp_host,
            port=s.smtp_port,
            username=s.smtp_user or None,
            password=s.smtp_password or None,
            use_tls=s.smtp_secure,
            start_tls=None if s.smtp_secure else True,
            timeout=s.mail_timeout_seconds,
        )

    def _config_missing(self) -> bool:
        s = self.settings
        return not (s.smtp_host and s.smtp_user and s.smtp_password)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def test_connection(self) -> MailResult:
        """Connect and authenticate, then disconnect. Used by the health check."""
        if self._config_missing():
            return _failure("CONFIG")
        try:
            async with self._client():
                pass
        except Exception as exc:
            code = classify_smtp_error(exc)
            logger.error("SMTP connection test failed (%s): %s", code, exc)
            return _failure(code)
        return MailResult(success=True, message=MESSAGE_CONNECTED)

    async def send_email(self, options: EmailMessageOptions) -> MailResult:
        if not validate_options(options):
            logger.warning("Rejected invalid email options")
            return _failure("INVALID")

        if not self.enabled:
            # Development fallback: no SMTP server configured.
            logger.info(
                "[DEV] Would send email to %s\n  Subject: %s\n%s",
                options.to,
                options.subject,
                options.text or options.html,
            )
            return MailResult(success=True, message=f"{MESSAGE_SENT} (console)")

        if self._config_missing():
            return _failure("CONFIG")

        msg = EmailMessage()
        msg["Subject"] = options.subject
        msg["From"] = self.settings.smtp_from
        msg["To"] = options.to
        msg.set_content(options.text or "")
        if options.html:
            msg.add_alternative(options.html, subtype="html")

        client = self._client()
        try:
            await client.connect()
        except Exception as exc:
            code = classify_smtp_error(exc)
            logger.error("SMTP connection failed (%s): %s", code, exc)
            return _failure(code)

        try:
            _errors, response = await client.send_message(msg)
        except Exception as exc:
            code = classify_smtp_error(exc)
            logger.error("SMTP send to %s failed (%s): %s", options.to, code, exc)
            return _failure(code)
        finally:
            try:
                await client.quit()
            except aiosmtplib.SMTPException:
                client.close()

        logger.info("Email sent to %s", options.to)
        return MailResult(success=True, message=f"{MESSAGE_SENT} à {options.to}", message_id=response)
