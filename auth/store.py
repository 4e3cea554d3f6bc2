"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository; the _row_to_*
functions are the mappers. The backend and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Emails are stored lower-cased and looked up lower-cased so "A@x.io" and
  "a@x.io" cannot become two accounts. Usernames keep their display casing
  but are unique case-insensitively (lookup uses lower()).

  Session ids and OTP codes are never stored in the clear: sessions are keyed
  by a random id that only travels inside a signed cookie, and OTP rows hold
  an HMAC digest of the code.

Timestamps are ISO 8601 UTC strings with fixed microsecond precision so that
string comparison in SQL orders them correctly.

DB path: auth/authgate.db by default.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import Invitation, Member, Organization, OtpChallenge, Session, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'authgate.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(254), nullable=False, unique=True),
    Column("name", String(255)),
    Column("username", String(20), unique=True),
    Column("hashed_password", Text),  # NULL for OTP-only accounts
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("banned", Boolean, nullable=False, server_default="0"),
    Column("ban_reason", Text),
    Column("ban_expires", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("active_organization_id", Integer),
)

_otp_challenges = Table(
    "otp_challenges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(254), nullable=False),
    Column("purpose", String(32), nullable=False),
    Column("code_hash", String(64), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("attempts_remaining", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    # One live code per (email, purpose): a new code supersedes the old one.
    UniqueConstraint("email", "purpose", name="uq_otp_email_purpose"),
)

_organizations = Table(
    "organizations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("slug", String(50), nullable=False, unique=True),
    Column("logo", Text),
    Column("created_at", String(32), nullable=False),
)

_members = Table(
    "members",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("role", String(30), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("organization_id", "user_id", name="uq_member_org_user"),
)

_invitations = Table(
    "invitations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
    Column("email", String(254), nullable=False),
    Column("role", String(30), nullable=False, server_default="member"),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("expires_at", String(32), nullable=False),
    Column("inviter_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new connection.

    SQLite PRAGMAs are per-connection and are not inherited from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, sessions, OTP challenges and organizations.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="a@example.com", hashed_password=hash_password("...")))
        user = store.get_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or username already
        exists. The backend turns that into an AuthError.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.lower(),
                    name=user.name,
                    username=user.username,
                    hashed_password=user.hashed_password,
                    email_verified=user.email_verified,
                    role=user.role,
                    banned=user.banned,
                    ban_reason=user.ban_reason,
                    ban_expires=user.ban_expires,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> Optional[User]:
        """Case-insensitive username lookup."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(func.lower(_users.c.username) == username.lower())
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by email. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: name, role, hashed_password, email_verified, banned,
        ban_reason, ban_expires. Returns False if user_id was not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    created_at=session.created_at or now_iso(),
                    expires_at=session.expires_at,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    active_organization_id=session.active_organization_id,
                )
            )
            conn.commit()

    def get_session(self, session_id: str) -> Optional[Session]:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
            conn.commit()
        return result.rowcount > 0

    def delete_user_sessions(self, user_id: int) -> int:
        """Revoke every session of a user (ban, password reset). Returns count."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def set_active_organization(self, session_id: str, organization_id: Optional[int]) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.update()
                .where(_sessions.c.id == session_id)
                .values(active_organization_id=organization_id)
            )
            conn.commit()

    def purge_expired_sessions(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < now_iso()))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # OTP challenges
    # ------------------------------------------------------------------

    def replace_otp(self, challenge: OtpChallenge) -> None:
        """Store a new challenge, superseding any existing one for (email, purpose).

        Delete and insert run in one transaction so a concurrent verifier sees
        either the old code or the new one, never neither.
        """
        email = challenge.email.lower()
        with self.engine.begin() as conn:
            conn.execute(
                _otp_challenges.delete().where(
                    (_otp_challenges.c.email == email) & (_otp_challenges.c.purpose == challenge.purpose)
                )
            )
            conn.execute(
                _otp_challenges.insert().values(
                    email=email,
                    purpose=challenge.purpose,
                    code_hash=challenge.code_hash,
                    expires_at=challenge.expires_at,
                    attempts_remaining=challenge.attempts_remaining,
                    created_at=challenge.created_at or now_iso(),
                )
            )

    def get_otp(self, email: str, purpose: str) -> Optional[OtpChallenge]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _otp_challenges.select().where(
                    (_otp_challenges.c.email == email.lower()) & (_otp_challenges.c.purpose == purpose)
                )
            ).fetchone()
        return _row_to_otp(row) if row is not None else None

    def decrement_otp_attempts(self, email: str, purpose: str) -> int:
        """Record one failed attempt and return the number of attempts left.

        An exhausted row (0 left) is kept until it expires or is superseded,
        so later attempts keep failing even with the right code.
        """
        email = email.lower()
        where = (
            (_otp_challenges.c.email == email)
            & (_otp_challenges.c.purpose == purpose)
            & (_otp_challenges.c.attempts_remaining > 0)
        )
        with self.engine.begin() as conn:
            conn.execute(
                _otp_challenges.update()
                .where(where)
                .values(attempts_remaining=_otp_challenges.c.attempts_remaining - 1)
            )
            remaining = conn.execute(
                _otp_challenges.select()
                .with_only_columns(_otp_challenges.c.attempts_remaining)
                .where((_otp_challenges.c.email == email) & (_otp_challenges.c.purpose == purpose))
            ).scalar()
        return max(remaining or 0, 0)

    def delete_otp(self, email: str, purpose: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _otp_challenges.delete().where(
                    (_otp_challenges.c.email == email.lower()) & (_otp_challenges.c.purpose == purpose)
                )
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def create_organization(self, org: Organization, owner_id: int) -> int:
        """Insert an organization and its owner membership atomically.

        Raises IntegrityError if the slug is taken.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _organizations.insert().values(name=org.name, slug=org.slug, logo=org.logo, created_at=now_iso())
            )
            org_id = result.inserted_primary_key[0]
            conn.execute(
                _members.insert().values(organization_id=org_id, user_id=owner_id, role="owner", created_at=now_iso())
            )
        return org_id

    def get_organization(self, org_id: int) -> Optional[Organization]:
        with self.engine.connect() as conn:
            row = conn.execute(_organizations.select().where(_organizations.c.id == org_id)).fetchone()
        return _row_to_organization(row) if row is not None else None

    def list_user_organizations(self, user_id: int) -> list[Organization]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _organizations.select()
                .join(_members, _members.c.organization_id == _organizations.c.id)
                .where(_members.c.user_id == user_id)
                .order_by(_organizations.c.name)
            ).fetchall()
        return [_row_to_organization(r) for r in rows]

    def add_member(self, member: Member) -> int:
        """Raises IntegrityError if the user is already a member."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _members.insert().values(
                    organization_id=member.organization_id,
                    user_id=member.user_id,
                    role=member.role,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_member(self, org_id: int, user_id: int) -> Optional[Member]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _members.select().where((_members.c.organization_id == org_id) & (_members.c.user_id == user_id))
            ).fetchone()
        return _row_to_member(row) if row is not None else None

    def list_members(self, org_id: int) -> list[Member]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _members.select().where(_members.c.organization_id == org_id).order_by(_members.c.id)
            ).fetchall()
        return [_row_to_member(r) for r in rows]

    def create_invitation(self, invitation: Invitation) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _invitations.insert().values(
                    organization_id=invitation.organization_id,
                    email=invitation.email.lower(),
                    role=invitation.role,
                    status=invitation.status,
                    expires_at=invitation.expires_at,
                    inviter_id=invitation.inviter_id,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_invitation(self, invitation_id: int) -> Optional[Invitation]:
        with self.engine.connect() as conn:
            row = conn.execute(_invitations.select().where(_invitations.c.id == invitation_id)).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def update_invitation_status(self, invitation_id: int, status: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_invitations.update().where(_invitations.c.id == invitation_id).values(status=status))
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        username=row.username,
        hashed_password=row.hashed_password,
        email_verified=bool(row.email_verified),
        role=row.role,
        banned=bool(row.banned),
        ban_reason=row.ban_reason,
        ban_expires=row.ban_expires,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        active_organization_id=row.active_organization_id,
    )


def _row_to_otp(row) -> OtpChallenge:
    return OtpChallenge(
        email=row.email,
        purpose=row.purpose,
        code_hash=row.code_hash,
        expires_at=row.expires_at,
        attempts_remaining=row.attempts_remaining,
        created_at=row.created_at,
    )


def _row_to_organization(row) -> Organization:
    return Organization(id=row.id, name=row.name, slug=row.slug, logo=row.logo, created_at=row.created_at)


def _row_to_member(row) -> Member:
    return Member(
        id=row.id,
        organization_id=row.organization_id,
        user_id=row.user_id,
        role=row.role,
        created_at=row.created_at,
    )


def _row_to_invitation(row) -> Invitation:
    return Invitation(
        id=row.id,
        organization_id=row.organization_id,
        email=row.email,
        role=row.role,
        status=row.status,
        expires_at=row.expires_at,
        inviter_id=row.inviter_id,
    )
