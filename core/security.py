"""
core/security.py -- Input validators and the HTML sanitizer.

Pure functions, no I/O, no state. Every validator returns a structured result
and never raises, so route handlers can render every violated rule at once.

Violation strings are static French rule descriptions. They are safe to show
verbatim because they never echo the input back.

Layer rule: core/ is the kernel. No imports from api/, web/, or auth/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

# Local part: the RFC 5321 atext set plus dots. Domain: dot-separated labels of
# at most 63 chars that neither start nor end with a hyphen. A single-label
# domain ("user@localhost") is accepted on purpose.
_EMAIL_RE = re.compile(
    r"[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*"
)
_EMAIL_MAX_LENGTH = 254  # RFC 5321

_OTP_RE = re.compile(r"[0-9]{6}")

_USERNAME_RE = re.compile(r"[a-zA-Z0-9_-]+")

_LOWER_RE = re.compile(r"[a-z]")
_UPPER_RE = re.compile(r"[A-Z]")
_DIGIT_RE = re.compile(r"[0-9]")
_SYMBOL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20

COMMON_PASSWORDS = frozenset({"password", "123456", "admin", "password123", "qwerty"})
RESERVED_USERNAMES = frozenset({"admin", "administrator", "root", "api", "www", "mail", "ftp", "support"})

# ---------------------------------------------------------------------------
# Violation messages
# ---------------------------------------------------------------------------

PASSWORD_TOO_SHORT = "Le mot de passe doit contenir au moins 8 caractères"
PASSWORD_TOO_LONG = "Le mot de passe ne peut pas dépasser 128 caractères"
PASSWORD_NO_LOWER = "Le mot de passe doit contenir au moins une minuscule"
PASSWORD_NO_UPPER = "Le mot de passe doit contenir au moins une majuscule"
PASSWORD_NO_DIGIT = "Le mot de passe doit contenir au moins un chiffre"
PASSWORD_NO_SYMBOL = "Le mot de passe doit contenir au moins un caractère spécial"
PASSWORD_TOO_COMMON = "Ce mot de passe est trop commun"

USERNAME_TOO_SHORT = "Le nom d'utilisateur doit contenir au moins 3 caractères"
USERNAME_TOO_LONG = "Le nom d'utilisateur ne peut pas dépasser 20 caractères"
USERNAME_BAD_CHARSET = "Le nom d'utilisateur ne peut contenir que des lettres, chiffres, tirets et underscores"
USERNAME_BAD_EDGES = "Le nom d'utilisateur ne peut pas commencer ou finir par un tiret ou underscore"
USERNAME_RESERVED = "Ce nom d'utilisateur est réservé"


@dataclass
class ValidationResult:
    """Outcome of a multi-rule validator. violations keeps rule order."""

    violations: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def is_valid_email(email: str) -> bool:
    """Syntax check plus the 254-char RFC 5321 length limit."""
    if not isinstance(email, str):
        return False
    return len(email) <= _EMAIL_MAX_LENGTH and _EMAIL_RE.fullmatch(email) is not None


def validate_password(password: str) -> ValidationResult:
    """Check every password rule and report all failures together.

    Rules are independent: a too-short password still gets its charset and
    denylist violations reported.
    """
    result = ValidationResult()
    if len(password) < PASSWORD_MIN_LENGTH:
        result.violations.append(PASSWORD_TOO_SHORT)
    if len(password) > PASSWORD_MAX_LENGTH:
        result.violations.append(PASSWORD_TOO_LONG)
    if not _LOWER_RE.search(password):
        result.violations.append(PASSWORD_NO_LOWER)
    if not _UPPER_RE.search(password):
        result.violations.append(PASSWORD_NO_UPPER)
    if not _DIGIT_RE.search(password):
        result.violations.append(PASSWORD_NO_DIGIT)
    if not _SYMBOL_RE.search(password):
        result.violations.append(PASSWORD_NO_SYMBOL)
    if password.lower() in COMMON_PASSWORDS:
        result.violations.append(PASSWORD_TOO_COMMON)
    return result


def validate_username(username: str) -> ValidationResult:
    result = ValidationResult()
    if len(username) < USERNAME_MIN_LENGTH:
        result.violations.append(USERNAME_TOO_SHORT)
    if len(username) > USERNAME_MAX_LENGTH:
        result.violations.append(USERNAME_TOO_LONG)
    if not _USERNAME_RE.fullmatch(username):
        result.violations.append(USERNAME_BAD_CHARSET)
    if username[:1] in ("_", "-") or username[-1:] in ("_", "-"):
        result.violations.append(USERNAME_BAD_EDGES)
    if username.lower() in RESERVED_USERNAMES:
        result.violations.append(USERNAME_RESERVED)
    return result


def is_valid_otp(code: str) -> bool:
    """Exactly six ASCII digits. No separators, no Unicode digits."""
    return isinstance(code, str) and _OTP_RE.fullmatch(code) is not None


# ---------------------------------------------------------------------------
# Sanitizer
# ---------------------------------------------------------------------------

# Ampersand first so entities produced by later substitutions are not
# escaped a second time within the same pass.
_HTML_ESCAPES = (
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&#039;"),
)


def sanitize_html(value: str) -> str:
    """Escape text for interpolation into an HTML document.

    Not idempotent: sanitize_html("&lt;") returns "&amp;lt;".
    """
    for char, entity in _HTML_ESCAPES:
        value = value.replace(char, entity)
    return value
