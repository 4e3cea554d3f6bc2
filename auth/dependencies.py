"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The request gate (api/gate.py) resolves the session once per request and
stores it on request.state. These helpers read that result; when the gate is
not installed (unit tests mounting a bare router) they resolve the session
themselves from the same credentials:
  1. Session cookie -- set by the web UI and the JSON sign-in endpoints.
  2. Authorization: Bearer <token> header -- API clients.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

Layer rule: no imports from api/ or web/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request

from auth.models import Session, User
from auth.tokens import SESSION_COOKIE
from core.messages import map_error_message

_UNSET = object()


def session_token_from_request(request: Request) -> Optional[str]:
    """Return the raw session token carried by the request, if any."""
    token: Optional[str] = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def _resolve(request: Request) -> tuple[Optional[User], Optional[Session]]:
    user = getattr(request.state, "user", _UNSET)
    if user is not _UNSET:
        return user, getattr(request.state, "session", None)
    resolved = request.app.state.auth_backend.resolve_session(session_token_from_request(request))
    user, session = resolved if resolved is not None else (None, None)
    request.state.user = user
    request.state.session = session
    return user, session


def try_get_current_user(request: Request) -> Optional[User]:
    """Return the authenticated User, or None. Never raises."""
    return _resolve(request)[0]


def get_current_session(request: Request) -> Optional[Session]:
    return _resolve(request)[1]


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": map_error_message("Authentication required")},
        )
    return user


def require_admin(request: Request) -> User:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if not user.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": map_error_message("Forbidden")},
        )
    return user
