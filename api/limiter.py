"""
api/limiter.py -- Shared slowapi rate limiter instance (per client IP).

Import this in api/main.py (to mount as middleware) and in the route modules
(to apply per-route limits with @limiter.limit()).

A single shared instance means every route shares the same in-memory counter
store. Per (email, purpose) throttling of one-time codes is a separate
concern handled by core.ratelimit inside the OTP policy.

Decorator order: @router.post(...) goes ABOVE @limiter.limit(...) so FastAPI
registers the limited wrapper. Route modules using the decorator do not use
`from __future__ import annotations`; FastAPI resolves the wrapper's string
annotations against slowapi's globals and would fail.

Limit strings come from Settings so deployments can tune them without code
changes. slowapi accepts a callable and evaluates it per request.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    return get_settings().login_rate_limit


def otp_send_limit() -> str:
    return get_settings().otp_send_rate_limit


def otp_verify_limit() -> str:
    return get_settings().otp_verify_rate_limit
