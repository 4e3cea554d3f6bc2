"""
api/gate.py -- Request gate: session resolution, route tiers, security headers.

Registered in api/main.py as the OUTERMOST http middleware so it sees every
request first and every response last, including responses produced by the
inner middleware (TrustedHost 400s, slowapi 429s, CORS preflights).

Per request:
  1. Resolve (user, session) from the session cookie or Bearer token via the
     AuthBackend. A missing, malformed or expired credential is simply an
     anonymous request. The result is stored on request.state for
     auth.dependencies and the page handlers.
  2. Auth page (/connexion, ...) with a user      -> 302 to the landing page.
  3. Admin prefix without a user                  -> 302 to sign-in?redirect=<path>.
     Admin prefix with a non-admin user           -> 403, empty body.
  4. Private prefix without a user                -> 302 to sign-in?redirect=<path>.
  5. Otherwise hand over to the application.
  6. Security headers are set on whatever response comes back, early
     returns included.
  7. Any exception in steps 1-5 or in the application is logged with its
     traceback and answered with a bare 500.

Security notes:
  [G1] The 403 and 500 bodies are empty so nothing about the route, the role
       check or the failure leaks. API paths get the generic JSON envelope
       instead so clients can still parse the error.

  [G2] The redirect target is the request path only (no query string),
       percent-encoded as a single query value.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool

from auth.dependencies import session_token_from_request
from core.config import RouteTable, get_settings
from core.messages import map_error_message

logger = logging.getLogger("authgate.gate")

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "script-src 'self'; "
    "style-src 'self'; "
    "img-src 'self' data: https:; "
    "font-src 'self'; "
    "connect-src 'self'; "
    "frame-ancestors 'none'"
)

SECURITY_HEADERS: dict[str, str] = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "X-XSS-Protection": "1; mode=block",
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
}

HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"


def apply_security_headers(response: Response, production: bool) -> Response:
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    if production:
        response.headers["Strict-Transport-Security"] = HSTS_VALUE
    return response


def sign_in_redirect(routes: RouteTable, path: str) -> RedirectResponse:
    return RedirectResponse(f"{routes.sign_in_path}?redirect={quote(path, safe='')}", status_code=302)


def _internal_error(path: str) -> Response:
    if path.startswith("/api/"):
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "internal_error", "message": map_error_message("Internal server error")}},
        )
    return Response(status_code=500, media_type="text/html")


async def _decide(request: Request, routes: RouteTable) -> Optional[Response]:
    """Steps 1-4. Returns an early response, or None to continue."""
    user = session = None
    token = session_token_from_request(request)
    if token:
        resolved = await run_in_threadpool(request.app.state.auth_backend.resolve_session, token)
        if resolved is not None:
            user, session = resolved
    request.state.user = user
    request.state.session = session

    path = request.url.path
    if routes.is_auth_page(path) and user is not None:
        return RedirectResponse(routes.landing_path, status_code=302)
    if routes.is_admin(path):
        if user is None:
            return sign_in_redirect(routes, path)
        if not user.is_admin:
            logger.info("Admin path denied: user_id=%s path=%s", user.id, path)
            if path.startswith("/api/"):
                return JSONResponse(
                    status_code=403,
                    content={"error": {"code": "forbidden", "message": map_error_message("Forbidden")}},
                )
            return Response(status_code=403, media_type="text/html")
        return None
    if routes.is_private(path) and user is None:
        return sign_in_redirect(routes, path)
    return None


async def security_gate(request: Request, call_next):
    """HTTP middleware entry point. See the module docstring for the algorithm."""
    settings = get_settings()
    routes: RouteTable = getattr(request.app.state, "route_table", None) or settings.route_table()
    path = request.url.path

    try:
        response = await _decide(request, routes)
    except Exception:
        logger.exception("Request gate failure on %s %s", request.method, path)
        response = _internal_error(path)
    else:
        if response is None:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception("Unhandled exception on %s %s", request.method, path)
                response = _internal_error(path)

    return apply_security_headers(response, production=settings.is_production)
