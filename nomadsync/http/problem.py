"""Problem+JSON utilities and global exception handlers.

Defines the RFC7807 media type, a factory for problem bodies and handler
callables that produce application/problem+json responses for HTTP errors,
request validation errors and unexpected failures.
"""

from __future__ import annotations

from typing import Any, Dict
import logging
from fastapi import Request
from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

PROBLEM_MEDIA_TYPE = "application/problem+json"

logger = logging.getLogger(__name__)

_TITLES = {
    400: "Bad Request",
    404: "Not Found",
    409: "Conflict",
    413: "Payload Too Large",
    415: "Unsupported Media Type",
    422: "Invalid Request",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


def problem(status: int, detail: str = "", **extra: Any) -> Dict[str, Any]:
    """Return a problem+json body for `status`."""
    body: Dict[str, Any] = {"title": _TITLES.get(status, "Error"), "status": int(status)}
    if detail:
        body["detail"] = detail
    body.update(extra)
    return body


def problem_response(status: int, detail: str = "", **extra: Any) -> JSONResponse:
    return JSONResponse(problem(status, detail, **extra), status_code=status, media_type=PROBLEM_MEDIA_TYPE)


async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status = int(getattr(exc, "status_code", 500) or 500)
    detail = exc.detail if isinstance(getattr(exc, "detail", None), dict) else problem(status, str(exc.detail or ""))
    headers = {str(k): str(v) for k, v in (getattr(exc, "headers", None) or {}).items()}
    return JSONResponse(detail, status_code=status, media_type=PROBLEM_MEDIA_TYPE, headers=headers or None)


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(e.get("loc", ())), "msg": str(e.get("msg", "")), "type": str(e.get("type", ""))}
        for e in exc.errors()
    ]
    logger.info("validation_422 route=%s errors_cnt=%d", request.url.path, len(errors))
    return problem_response(422, "Request validation failed", errors=errors)


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unexpected_error route=%s", request.url.path, exc_info=exc)
    return problem_response(500)


__all__ = [
    "PROBLEM_MEDIA_TYPE",
    "problem",
    "problem_response",
    "handle_http_exception",
    "handle_request_validation_error",
    "handle_unexpected_error",
]
