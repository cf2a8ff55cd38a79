from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from agentgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from agentgate.apps.api.response import success_response
from agentgate.persistence.db import pool_stats
from agentgate.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    request_latency_p95,
)

router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)

_METRICS_WINDOW_S = 300


@router.get("/metrics")
async def metrics(request: Request) -> dict[str, Any]:
    # In-process view only; counters reset on restart.
    payload = {
        "window_s": _METRICS_WINDOW_S,
        "counters": counters_snapshot(),
        "request_latency_p95_ms": request_latency_p95(_METRICS_WINDOW_S),
        "external_calls": external_latency_by_integration(_METRICS_WINDOW_S),
        "db_pool": pool_stats(),
    }
    return success_response(request=request, data=payload)
