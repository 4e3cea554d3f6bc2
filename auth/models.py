"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
backend do the work; these only own the shape.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class OtpPurpose(str, Enum):
    """What a one-time code may be used for. A code is valid for one purpose only."""

    sign_in = "sign-in"
    email_verification = "email-verification"
    password_reset = "password-reset"


class OtpOutcome(str, Enum):
    """Result of checking a code against the stored challenge.

    Only the policy layer and server logs see these values. Every failure
    is reported to the caller with the same generic message.
    """

    verified = "verified"
    wrong_code = "wrong_code"
    expired = "expired"
    exhausted = "exhausted"
    no_challenge = "no_challenge"


@dataclass
class User:
    """An identity. role is "user" by default; "admin" unlocks the admin area.

    hashed_password is None for accounts created through email-OTP sign-in.
    A ban with ban_expires in the past is treated as lifted.
    """

    email: str
    role: str = "user"
    id: Optional[int] = None
    name: Optional[str] = None
    username: Optional[str] = None
    hashed_password: Optional[str] = None
    email_verified: bool = False
    banned: bool = False
    ban_reason: Optional[str] = None
    ban_expires: Optional[str] = None  # ISO 8601, None = permanent
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def is_banned(self, now: Optional[datetime] = None) -> bool:
        if not self.banned:
            return False
        if self.ban_expires is None:
            return True
        now = now or datetime.now(timezone.utc)
        return datetime.fromisoformat(self.ban_expires) > now


@dataclass
class Session:
    """Server-side session row. The browser only holds a signed reference to id."""

    id: str
    user_id: int
    expires_at: str
    created_at: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    active_organization_id: Optional[int] = None


@dataclass
class OtpChallenge:
    """One outstanding code per (email, purpose). code_hash is an HMAC digest."""

    email: str
    purpose: str
    code_hash: str
    expires_at: str
    attempts_remaining: int
    created_at: Optional[str] = None


@dataclass
class Organization:
    name: str
    slug: str
    id: Optional[int] = None
    logo: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class Member:
    organization_id: int
    user_id: int
    role: str  # "owner", "admin", "member"
    id: Optional[int] = None
    created_at: Optional[str] = None


@dataclass
class Invitation:
    organization_id: int
    email: str
    inviter_id: int
    expires_at: str
    role: str = "member"
    status: str = "pending"  # "pending", "accepted", "canceled"
    id: Optional[int] = None
