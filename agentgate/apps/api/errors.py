from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from agentgate.apps.api.response import error_response
from agentgate.core.errors import (
    GatewayError,
    LedgerUnavailableError,
    RunPersistenceError,
    UnknownTierError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "QUOTA_EXCEEDED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors that reach the API layer map onto fixed status/code pairs.
_GATEWAY_ERROR_STATUS: dict[type[GatewayError], tuple[int, str, str]] = {
    UnknownTierError: (422, "UNKNOWN_TIER", "Unknown subscription tier"),
    LedgerUnavailableError: (503, "LEDGER_UNAVAILABLE", "Usage ledger unavailable"),
    RunPersistenceError: (503, "RUN_STORE_UNAVAILABLE", "Run storage unavailable"),
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


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Client errors are rejected before admission; list every field problem.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def gateway_exception_handler(request: Request, exc: GatewayError) -> JSONResponse:
    status_code, code, message = 500, "INTERNAL_ERROR", "Internal server error"
    for error_type, mapping in _GATEWAY_ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code, code, message = mapping
            break
    if status_code >= 500:
        logger.warning("gateway_error path=%s error=%s", request.url.path, exc, exc_info=exc)
        details = None
    else:
        details = {"reason": str(exc)}
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
