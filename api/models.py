"""
API request and response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models reject unknown fields (extra="forbid"). Field constraints here
are transport limits only (lengths, enums); the password/username/email rules
live in core/security.py so their violations can be reported in French, all
at once.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Invitation, Member, Organization, Session, User

_REQUEST_CONFIG = ConfigDict(str_strip_whitespace=True, extra="forbid")

SLUG_PATTERN = r"^[a-z0-9](?:[a-z0-9-]{0,48}[a-z0-9])?$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    user = "user"
    admin = "admin"


class InvitationRoleEnum(str, Enum):
    member = "member"
    admin = "admin"


# ---------------------------------------------------------------------------
# Request models -- /api/auth
# ---------------------------------------------------------------------------


class SignUpRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=254)
    # Upper bound well above the 128-char rule so the rule, not pydantic,
    # produces the violation message.
    password: str = Field(max_length=255)
    name: str = Field(min_length=1, max_length=100)
    username: Optional[str] = Field(default=None, max_length=50)


class SignInEmailRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=254)
    password: str = Field(max_length=255)


class SignInUsernameRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    username: str = Field(max_length=50)
    password: str = Field(max_length=255)


class SendOtpRequest(BaseModel):
    """Body for POST /email-otp/send-verification-otp.

    type is a plain string: an unknown value is answered by the OTP policy
    with the mapped "Invalid OTP type" message.
    """

    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=254)
    type: str = Field(max_length=32)


class ForgetPasswordRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=254)


class OtpVerifyRequest(BaseModel):
    """Body for POST /sign-in/email-otp and /email-otp/verify-email."""

    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=254)
    otp: str = Field(max_length=16)


class ResetPasswordRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=254)
    otp: str = Field(max_length=16)
    password: str = Field(max_length=255)


# ---------------------------------------------------------------------------
# Request models -- /api/admin, /api/organization
# ---------------------------------------------------------------------------


class SetRoleRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    role: RoleEnum


class BanRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    reason: Optional[str] = Field(default=None, max_length=500)
    # Seconds until the ban lifts. None = permanent.
    expires_in: Optional[int] = Field(default=None, ge=60, le=10 * 365 * 24 * 3600)


class OrganizationCreate(BaseModel):
    model_config = _REQUEST_CONFIG

    name: str = Field(min_length=1, max_length=100)
    slug: str = Field(pattern=SLUG_PATTERN)


class InvitationCreate(BaseModel):
    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=254)
    role: InvitationRoleEnum = InvitationRoleEnum.member


class SetActiveOrganizationRequest(BaseModel):
    """organization_id=None clears the active organization."""

    model_config = _REQUEST_CONFIG

    organization_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    """Fixed acknowledgment body. Identical for every caller of an endpoint."""

    model_config = ConfigDict(frozen=True)

    message: str


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str] = None
    username: Optional[str] = None
    role: str
    email_verified: bool
    banned: bool = False
    ban_reason: Optional[str] = None
    ban_expires: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            username=user.username,
            role=user.role,
            email_verified=user.email_verified,
            banned=user.banned,
            ban_reason=user.ban_reason,
            ban_expires=user.ban_expires,
            created_at=user.created_at,
        )


class SessionResponse(BaseModel):
    """Session metadata. The session id itself is never returned."""

    model_config = ConfigDict(frozen=True)

    expires_at: str
    created_at: Optional[str] = None
    active_organization_id: Optional[int] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            expires_at=session.expires_at,
            created_at=session.created_at,
            active_organization_id=session.active_organization_id,
        )


class SessionInfoResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    session: SessionResponse


class SignInResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: UserResponse


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    slug: str
    logo: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_org(cls, org: Organization) -> "OrganizationResponse":
        return cls(id=org.id, name=org.name, slug=org.slug, logo=org.logo, created_at=org.created_at)


class MemberResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    organization_id: int
    user_id: int
    role: str
    created_at: Optional[str] = None

    @classmethod
    def from_member(cls, member: Member) -> "MemberResponse":
        return cls(
            id=member.id,
            organization_id=member.organization_id,
            user_id=member.user_id,
            role=member.role,
            created_at=member.created_at,
        )


class InvitationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    organization_id: int
    email: str
    role: str
    status: str
    expires_at: str

    @classmethod
    def from_invitation(cls, invitation: Invitation) -> "InvitationResponse":
        return cls(
            id=invitation.id,
            organization_id=invitation.organization_id,
            email=invitation.email,
            role=invitation.role,
            status=invitation.status,
            expires_at=invitation.expires_at,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload. message is always a mapped, static string."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    # Static rule descriptions from core.security; never echo input.
    violations: list[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
    mail: str = "console"
