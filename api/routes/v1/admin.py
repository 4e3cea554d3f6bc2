"""
api/routes/v1/admin.py -- User administration endpoints (mounted at /api/admin).

Routes:
  GET  /api/admin/users                  -- list every account
  POST /api/admin/users/{id}/role        -- set role ("user" or "admin")
  POST /api/admin/users/{id}/ban         -- ban, optionally for a duration; revokes sessions
  POST /api/admin/users/{id}/unban       -- lift a ban

Access: the request gate already answers non-admins with 403 for /api/admin;
require_admin repeats the check so the router is safe if mounted elsewhere.

Security:
  [M4] An admin cannot ban or demote their own account, so the last admin
       cannot lock everyone out by accident.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from api.models import BanRequest, SetRoleRequest, UserResponse
from api.responses import auth_error_response, error_response
from auth.backend import AuthBackend, AuthError
from auth.dependencies import require_admin
from auth.models import User
from core.messages import map_error_message

router = APIRouter()


def _backend(request: Request) -> AuthBackend:
    return request.app.state.auth_backend


@router.get("/users", response_model=list[UserResponse])
async def list_users(request: Request, admin: User = Depends(require_admin)) -> list[UserResponse]:
    users = await run_in_threadpool(_backend(request).list_users)
    return [UserResponse.from_user(u) for u in users]


@router.post("/users/{user_id}/role", response_model=UserResponse)
async def set_role(
    request: Request,
    user_id: int,
    body: SetRoleRequest,
    admin: User = Depends(require_admin),
):
    if user_id == admin.id and body.role.value != "admin":
        return error_response(403, "forbidden", map_error_message("Forbidden"))  # [M4]
    try:
        user = await run_in_threadpool(_backend(request).set_role, user_id, body.role.value)
    except AuthError as exc:
        return auth_error_response(exc)
    return UserResponse.from_user(user)


@router.post("/users/{user_id}/ban", response_model=UserResponse)
async def ban_user(
    request: Request,
    user_id: int,
    body: BanRequest,
    admin: User = Depends(require_admin),
):
    if user_id == admin.id:
        return error_response(403, "forbidden", map_error_message("Forbidden"))  # [M4]
    try:
        user = await run_in_threadpool(_backend(request).ban_user, user_id, body.reason, body.expires_in)
    except AuthError as exc:
        return auth_error_response(exc)
    return UserResponse.from_user(user)


@router.post("/users/{user_id}/unban", response_model=UserResponse)
async def unban_user(request: Request, user_id: int, admin: User = Depends(require_admin)):
    try:
        user = await run_in_threadpool(_backend(request).unban_user, user_id)
    except AuthError as exc:
        return auth_error_response(exc)
    return UserResponse.from_user(user)
