"""
auth/backend.py -- The authentication framework boundary.

AuthBackend is the narrow contract the policy layer (auth/otp.py, api/gate.py)
and the routes depend on. SqlAuthBackend is the default implementation on top
of auth.store.UserStore.

Expected failures are raised as AuthError. Its message is an English
identifier ("Invalid email or password", "Account banned", ...) that is a key
of core.messages, never text meant for the user. Callers pass the error
through map_error_message() before anything reaches a response.

Every method here is synchronous (SQLAlchemy Core + bcrypt). Async callers
run them with starlette.concurrency.run_in_threadpool.

Security notes:
  [C1] Password sign-in runs bcrypt on every path, including unknown accounts,
       so timing does not reveal whether an email is registered.

  [C2] OTP verification is serialized by an in-process lock. Two concurrent
       attempts on the same challenge cannot both observe the same
       attempts_remaining.

  [C3] A session resolves only if the JWT verifies, the row exists, belongs
       to the token's user and is unexpired, and the user is not banned.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import abc
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import (
    Invitation,
    Member,
    Organization,
    OtpChallenge,
    OtpOutcome,
    OtpPurpose,
    Session,
    User,
)
from auth.store import UserStore, to_iso
from auth.tokens import (
    burn_password_check,
    create_session_token,
    decode_session_token,
    generate_otp_code,
    generate_session_id,
    hash_otp_code,
    hash_password,
    otp_code_matches,
    verify_password,
)
from core.config import get_settings

logger = logging.getLogger("authgate.auth")

_ROLES = ("user", "admin")
_ORG_ROLES = ("owner", "admin", "member")
_INVITATION_TTL = timedelta(hours=48)


class AuthError(Exception):
    """Expected authentication failure.

    message: framework identifier, a key of core.messages.
    code:    stable machine code for the JSON envelope.
    status_code: HTTP status the route layer should answer with.
    """

    def __init__(self, message: str, code: str = "auth_error", status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class AuthBackend(abc.ABC):
    """Operations the application consumes from the authentication framework."""

    # --- session -------------------------------------------------------

    @abc.abstractmethod
    def resolve_session(self, token: Optional[str]) -> Optional[tuple[User, Session]]:
        """Return (user, session) for a session token, or None. Never raises for bad tokens."""

    @abc.abstractmethod
    def create_session(
        self, user: User, ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> tuple[Session, str]:
        """Open a session for user. Returns the row and the signed cookie token."""

    @abc.abstractmethod
    def revoke_session(self, session_id: str) -> None: ...

    # --- credentials ---------------------------------------------------

    @abc.abstractmethod
    def sign_up(self, email: str, password: str, name: str, username: Optional[str] = None) -> User: ...

    @abc.abstractmethod
    def sign_in_with_password(self, email: str, password: str) -> User: ...

    @abc.abstractmethod
    def sign_in_with_username(self, username: str, password: str) -> User: ...

    # --- one-time codes ------------------------------------------------

    @abc.abstractmethod
    def issue_otp(self, email: str, purpose: OtpPurpose) -> str:
        """Generate and store a code for (email, purpose). Succeeds for unknown emails too."""

    @abc.abstractmethod
    def verify_otp(self, email: str, code: str, purpose: OtpPurpose) -> OtpOutcome: ...

    @abc.abstractmethod
    def sign_in_with_otp(self, email: str) -> User:
        """Return the account for email after a verified sign-in code, creating it if needed."""

    @abc.abstractmethod
    def mark_email_verified(self, email: str) -> Optional[User]: ...

    @abc.abstractmethod
    def reset_password(self, email: str, new_password: str) -> None: ...

    # --- admin ---------------------------------------------------------

    @abc.abstractmethod
    def list_users(self) -> list[User]: ...

    @abc.abstractmethod
    def set_role(self, user_id: int, role: str) -> User: ...

    @abc.abstractmethod
    def ban_user(self, user_id: int, reason: Optional[str] = None, expires_in: Optional[int] = None) -> User: ...

    @abc.abstractmethod
    def unban_user(self, user_id: int) -> User: ...

    # --- organizations -------------------------------------------------

    @abc.abstractmethod
    def create_organization(self, owner: User, name: str, slug: str) -> Organization: ...

    @abc.abstractmethod
    def get_organization(self, organization_id: int) -> Optional[Organization]: ...

    @abc.abstractmethod
    def list_organizations(self, user: User) -> list[Organization]: ...

    @abc.abstractmethod
    def list_members(self, user: User, organization_id: int) -> list[Member]: ...

    @abc.abstractmethod
    def invite_member(self, inviter: User, organization_id: int, email: str, role: str = "member") -> Invitation: ...

    @abc.abstractmethod
    def accept_invitation(self, user: User, invitation_id: int) -> Member: ...

    @abc.abstractmethod
    def set_active_organization(self, user: User, session: Session, organization_id: Optional[int]) -> Session:
        """Point the session at one of the user's organizations, or clear it with None."""


# ---------------------------------------------------------------------------
# Default implementation
# ---------------------------------------------------------------------------


class SqlAuthBackend(AuthBackend):
    """AuthBackend over a UserStore (SQLAlchemy Core, SQLite by default)."""

    def __init__(self, store: UserStore) -> None:
        self.store = store
        self._settings = get_settings()
        self._otp_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Sessions [C3]
    # ------------------------------------------------------------------

    def resolve_session(self, token: Optional[str]) -> Optional[tuple[User, Session]]:
        if not token:
            return None
        payload = decode_session_token(token)
        if payload is None:
            return None
        session = self.store.get_session(payload["sid"])
        if session is None or session.user_id != payload["uid"]:
            return None
        if _parse(session.expires_at) <= _now():
            self.store.delete_session(session.id)
            return None
        user = self.store.get_by_id(session.user_id)
        if user is None:
            return None
        if self._is_banned(user):
            return None
        return user, session

    def create_session(
        self, user: User, ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> tuple[Session, str]:
        expire_seconds = self._settings.session_expire_seconds
        session = Session(
            id=generate_session_id(),
            user_id=user.id,
            expires_at=to_iso(_now() + timedelta(seconds=expire_seconds)),
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
        )
        self.store.create_session(session)
        self.store.update_last_login(user.id)
        return session, create_session_token(session.id, user.id, expire_seconds)

    def revoke_session(self, session_id: str) -> None:
        self.store.delete_session(session_id)

    # ------------------------------------------------------------------
    # Credentials [C1]
    # ------------------------------------------------------------------

    def sign_up(self, email: str, password: str, name: str, username: Optional[str] = None) -> User:
        if not self._settings.self_registration_enabled:
            raise AuthError("Registration disabled", "registration_disabled", 403)
        if username and self.store.get_by_username(username) is not None:
            raise AuthError("Username already exists", "username_taken", 409)
        user = User(
            email=email.lower(),
            name=name,
            username=username or None,
            hashed_password=hash_password(password),
            role=self._initial_role(email),
        )
        try:
            user.id = self.store.create_user(user)
        except IntegrityError:
            raise AuthError("Email already exists", "email_taken", 409)
        logger.info("User registered: id=%s", user.id)
        return user

    def _initial_role(self, email: str) -> str:
        admins = {a.strip().lower() for a in self._settings.admin_emails}
        return "admin" if email.lower() in admins else "user"

    def sign_in_with_password(self, email: str, password: str) -> User:
        return self._check_password(self.store.get_by_email(email), password, "Invalid email or password")

    def sign_in_with_username(self, username: str, password: str) -> User:
        return self._check_password(
            self.store.get_by_username(username), password, "Invalid username or password"
        )

    def _check_password(self, user: Optional[User], password: str, failure: str) -> User:
        if user is None or user.hashed_password is None:
            burn_password_check(password)
            raise AuthError(failure, "invalid_credentials", 401)
        if not verify_password(password, user.hashed_password):
            raise AuthError(failure, "invalid_credentials", 401)
        if self._is_banned(user):
            raise AuthError("Account banned", "banned", 403)
        return user

    def _is_banned(self, user: User) -> bool:
        """Return the effective ban state, lifting an expired ban in place."""
        if not user.banned:
            return False
        if user.is_banned(_now()):
            return True
        self.store.update_user(user.id, banned=False, ban_reason=None, ban_expires=None)
        user.banned, user.ban_reason, user.ban_expires = False, None, None
        logger.info("Expired ban lifted: user_id=%s", user.id)
        return False

    # ------------------------------------------------------------------
    # One-time codes [C2]
    # ------------------------------------------------------------------

    def issue_otp(self, email: str, purpose: OtpPurpose) -> str:
        purpose = OtpPurpose(purpose)
        code = generate_otp_code()
        self.store.replace_otp(
            OtpChallenge(
                email=email,
                purpose=purpose.value,
                code_hash=hash_otp_code(email, purpose.value, code),
                expires_at=to_iso(_now() + timedelta(seconds=self._settings.otp_expire_seconds)),
                attempts_remaining=self._settings.otp_max_attempts,
            )
        )
        return code

    def verify_otp(self, email: str, code: str, purpose: OtpPurpose) -> OtpOutcome:
        purpose = OtpPurpose(purpose)
        with self._otp_lock:
            challenge = self.store.get_otp(email, purpose.value)
            if challenge is None:
                return OtpOutcome.no_challenge
            if _parse(challenge.expires_at) <= _now():
                self.store.delete_otp(email, purpose.value)
                return OtpOutcome.expired
            if challenge.attempts_remaining <= 0:
                return OtpOutcome.exhausted
            if otp_code_matches(email, purpose.value, code, challenge.code_hash):
                self.store.delete_otp(email, purpose.value)
                return OtpOutcome.verified
            remaining = self.store.decrement_otp_attempts(email, purpose.value)
        return OtpOutcome.exhausted if remaining == 0 else OtpOutcome.wrong_code

    def sign_in_with_otp(self, email: str) -> User:
        user = self.store.get_by_email(email)
        if user is None:
            user = User(email=email.lower(), email_verified=True, role=self._initial_role(email))
            try:
                user.id = self.store.create_user(user)
            except IntegrityError:
                # Concurrent first sign-in for the same address.
                user = self.store.get_by_email(email)
            else:
                logger.info("User registered via sign-in code: id=%s", user.id)
        if self._is_banned(user):
            raise AuthError("Account banned", "banned", 403)
        if not user.email_verified:
            self.store.update_user(user.id, email_verified=True)
            user.email_verified = True
        return user

    def mark_email_verified(self, email: str) -> Optional[User]:
        user = self.store.get_by_email(email)
        if user is None:
            return None
        if not user.email_verified:
            self.store.update_user(user.id, email_verified=True)
            user.email_verified = True
        return user

    def reset_password(self, email: str, new_password: str) -> None:
        user = self.store.get_by_email(email)
        # The same bcrypt cost is paid whether or not the account exists.
        hashed = hash_password(new_password)
        if user is None:
            return
        self.store.update_user(user.id, hashed_password=hashed, email_verified=True)
        revoked = self.store.delete_user_sessions(user.id)
        logger.info("Password reset: user_id=%s sessions_revoked=%d", user.id, revoked)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise AuthError("User not found", "not_found", 404)
        return user

    def list_users(self) -> list[User]:
        return self.store.list_users()

    def set_role(self, user_id: int, role: str) -> User:
        if role not in _ROLES:
            raise AuthError("Invalid request body", "invalid_role", 400)
        user = self._require_user(user_id)
        self.store.update_user(user_id, role=role)
        user.role = role
        logger.info("Role changed: user_id=%s role=%s", user_id, role)
        return user

    def ban_user(self, user_id: int, reason: Optional[str] = None, expires_in: Optional[int] = None) -> User:
        user = self._require_user(user_id)
        ban_expires = to_iso(_now() + timedelta(seconds=expires_in)) if expires_in else None
        self.store.update_user(user_id, banned=True, ban_reason=reason, ban_expires=ban_expires)
        revoked = self.store.delete_user_sessions(user_id)
        user.banned, user.ban_reason, user.ban_expires = True, reason, ban_expires
        logger.info("User banned: user_id=%s sessions_revoked=%d", user_id, revoked)
        return user

    def unban_user(self, user_id: int) -> User:
        user = self._require_user(user_id)
        self.store.update_user(user_id, banned=False, ban_reason=None, ban_expires=None)
        user.banned, user.ban_reason, user.ban_expires = False, None, None
        logger.info("User unbanned: user_id=%s", user_id)
        return user

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def _require_membership(self, user: User, organization_id: int) -> Member:
        if self.store.get_organization(organization_id) is None:
            raise AuthError("Organization not found", "not_found", 404)
        member = self.store.get_member(organization_id, user.id)
        if member is None:
            # Non-members cannot tell a private organization from a missing one.
            raise AuthError("Organization not found", "not_found", 404)
        return member

    def create_organization(self, owner: User, name: str, slug: str) -> Organization:
        org = Organization(name=name, slug=slug.lower())
        try:
            org.id = self.store.create_organization(org, owner.id)
        except IntegrityError:
            raise AuthError("Organization already exists", "organization_exists", 409)
        logger.info("Organization created: id=%s owner_id=%s", org.id, owner.id)
        return org

    def get_organization(self, organization_id: int) -> Optional[Organization]:
        return self.store.get_organization(organization_id)

    def list_organizations(self, user: User) -> list[Organization]:
        return self.store.list_user_organizations(user.id)

    def list_members(self, user: User, organization_id: int) -> list[Member]:
        self._require_membership(user, organization_id)
        return self.store.list_members(organization_id)

    def invite_member(self, inviter: User, organization_id: int, email: str, role: str = "member") -> Invitation:
        member = self._require_membership(inviter, organization_id)
        if member.role not in ("owner", "admin"):
            raise AuthError("Not an organization admin", "forbidden", 403)
        if role not in _ORG_ROLES or role == "owner":
            raise AuthError("Invalid request body", "invalid_role", 400)
        invitation = Invitation(
            organization_id=organization_id,
            email=email.lower(),
            inviter_id=inviter.id,
            role=role,
            expires_at=to_iso(_now() + _INVITATION_TTL),
        )
        invitation.id = self.store.create_invitation(invitation)
        logger.info("Invitation created: id=%s organization_id=%s", invitation.id, organization_id)
        return invitation

    def accept_invitation(self, user: User, invitation_id: int) -> Member:
        invitation = self.store.get_invitation(invitation_id)
        if (
            invitation is None
            or invitation.status != "pending"
            or invitation.email != user.email.lower()
            or _parse(invitation.expires_at) <= _now()
        ):
            raise AuthError("Invalid invitation", "invalid_invitation", 400)
        if self.store.get_member(invitation.organization_id, user.id) is not None:
            raise AuthError("User already in organization", "already_member", 409)
        member = Member(organization_id=invitation.organization_id, user_id=user.id, role=invitation.role)
        member.id = self.store.add_member(member)
        self.store.update_invitation_status(invitation_id, "accepted")
        return member

    def set_active_organization(self, user: User, session: Session, organization_id: Optional[int]) -> Session:
        if organization_id is not None:
            self._require_membership(user, organization_id)
        self.store.set_active_organization(session.id, organization_id)
        session.active_organization_id = organization_id
        return session
