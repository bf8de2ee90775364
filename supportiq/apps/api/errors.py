from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from supportiq.core.errors import SupportIQError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "PAYMENT_REQUIRED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def error_body(
    request: Request, *, code: str, message: str, details: dict[str, Any] | None = None
) -> dict[str, Any]:
    # Every error carries a string `error` member plus a stable code.
    body: dict[str, Any] = {
        "error": message,
        "code": code,
        "request_id": getattr(request.state, "request_id", None),
    }
    if details:
        body["details"] = jsonable_encoder(details)
    return body


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return JSONResponse(
        content=error_body(request, code=code, message=message, details=details),
        status_code=exc.status_code,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return JSONResponse(
        content=error_body(request, code=code, message=message, details=details),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for client parsing.
    return JSONResponse(
        content=error_body(
            request,
            code="VALIDATION_ERROR",
            message="Validation error",
            details={"errors": exc.errors()},
        ),
        status_code=422,
    )


async def supportiq_exception_handler(request: Request, exc: SupportIQError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("request_failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    headers = None
    retry_after_ms = exc.context.get("retry_after_ms")
    if isinstance(retry_after_ms, int):
        headers = {"Retry-After": str(max(1, -(-retry_after_ms // 1000)))}
    return JSONResponse(
        content=error_body(request, code=exc.code, message=exc.message, details=exc.context or None),
        status_code=exc.status_code,
        headers=headers,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    return JSONResponse(
        content=error_body(request, code="INTERNAL_ERROR", message="Internal server error"),
        status_code=500,
    )
