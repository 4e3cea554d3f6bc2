"""
auth/tokens.py -- Password hashing, session JWTs, HMAC digests and OTP codes.

Security design decisions:
  Passwords: bcrypt over a base64 SHA-256 digest of the password, so
       characters past bcrypt's 72-byte limit still count. The _DUMMY_HASH
       constant enables timing equalization so response time does not reveal
       whether an account exists [C1].

  Sessions: the server keeps a session row keyed by a random id
       (secrets.token_urlsafe). The browser only receives an HS256 JWT
       (python-jose) carrying that id as "sid". Verification returns None on
       any failure. The backend then checks the row and the user.

  OTP codes: six digits drawn with secrets.randbelow. Only
       HMAC-SHA256(SECRET_KEY, email|purpose|code) is stored, so a leaked
       database row cannot be replayed and the digest is bound to its
       (email, purpose) pair. Comparison uses hmac.compare_digest.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup [M6].

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("authgate.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE = "authgate_session"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def _bcrypt_input(plain: str) -> bytes:
    """Digest the password to 44 base64 bytes before bcrypt.

    bcrypt ignores everything past 72 bytes and passwords may be 128
    characters, so every character has to reach the hash through the digest.
    Base64 keeps NUL bytes out of the bcrypt input.
    """
    return base64.b64encode(hashlib.sha256(plain.encode("utf-8")).digest())


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_bcrypt_input(plain), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_bcrypt_input(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first sign-in attempt is not measurably slower than later ones.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded.

    Called on every sign-in path that fails before a real hash is available
    (unknown account, OTP-only account) so all failures cost one bcrypt.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


def create_session_token(session_id: str, user_id: int, expire_seconds: int = 0) -> str:
    """Encode a signed JWT referencing a server-side session row.

    Args:
        session_id:     Primary key of the sessions row.
        user_id:        Owner of the session, cross-checked on resolve.
        expire_seconds: Token lifetime. 0 (default) uses
                        Settings.session_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sid": session_id,
        "uid": user_id,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> Optional[dict]:
    """Decode and verify a session JWT. Returns the payload or None on any failure.

    A malformed, tampered or expired token is an unauthenticated request,
    not an error.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not isinstance(payload.get("sid"), str) or not isinstance(payload.get("uid"), int):
        return None
    return payload


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


def generate_otp_code() -> str:
    """Return six uniformly random ASCII digits (leading zeros kept)."""
    return f"{secrets.randbelow(1_000_000):06d}"


def hash_otp_code(email: str, purpose: str, code: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, email|purpose|code) as a hex string."""
    message = f"{email.lower()}|{purpose}|{code}"
    return hmac.new(
        _settings.secret_key.encode(),
        message.encode(),
        hashlib.sha256,
    ).hexdigest()


def otp_code_matches(email: str, purpose: str, code: str, code_hash: str) -> bool:
    return hmac.compare_digest(hash_otp_code(email, purpose, code), code_hash)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: HTTPS-only when SECURE_COOKIES=true or in production.
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies or _settings.is_production,
        max_age=duration,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE, httponly=True, samesite="lax")
