from __future__ import annotations

from typing import Any

from agentgate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    404: _error_response("Not found", _error_example(code="NOT_FOUND", message="Run not found")),
    422: _error_response(
        "Validation error",
        _error_example(
            code="REQUEST_VALIDATION_ERROR",
            message="Validation error",
            details={"errors": [{"loc": ["body", "workspace_id"], "msg": "Field required"}]},
        ),
    ),
    500: _error_response(
        "Internal error", _error_example(code="INTERNAL_ERROR", message="Internal server error")
    ),
}

RUN_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    429: _error_response(
        "Quota exceeded",
        _error_example(
            code="QUOTA_EXCEEDED",
            message="rate limit exceeded",
            details={"status": "quota_exceeded", "reason": "rate_limit_exceeded"},
        ),
    ),
}

LEDGER_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    503: _error_response(
        "Ledger unavailable",
        _error_example(code="LEDGER_UNAVAILABLE", message="Usage ledger unavailable"),
    ),
}
