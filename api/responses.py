"""
api/responses.py -- Builders for the JSON error envelope used by every route.

All error bodies have the shape {"error": {"code", "message", "violations"}}
where message is already mapped through core.messages. Nothing here accepts
raw exception text.
"""

from __future__ import annotations

from typing import Optional

from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from auth.backend import AuthError
from auth.otp import OtpResult
from core.messages import map_error_message

_CODES_BY_STATUS = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    503: "service_unavailable",
}


def no_store(response: JSONResponse) -> JSONResponse:
    """Credential responses must not be cached by browsers or proxies."""
    response.headers["Cache-Control"] = "no-store"
    return response


def error_response(
    status_code: int,
    code: str,
    message: str,
    violations: Optional[list[str]] = None,
    retry_after: Optional[int] = None,
) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=code, message=message, violations=violations or [])
        ).model_dump(),
    )
    if retry_after is not None:
        response.headers["Retry-After"] = str(retry_after)
    return response


def auth_error_response(exc: AuthError) -> JSONResponse:
    return error_response(exc.status_code, exc.code, map_error_message(exc))


def policy_error_response(result: OtpResult) -> JSONResponse:
    return error_response(
        result.status_code,
        _CODES_BY_STATUS.get(result.status_code, "error"),
        result.message,
        violations=result.violations,
        retry_after=result.retry_after,
    )
