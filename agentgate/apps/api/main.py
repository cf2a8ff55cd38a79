from __future__ import annotations

from contextlib import asynccontextmanager
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from agentgate.apps.api.deps import close_invoker
from agentgate.apps.api.errors import (
    gateway_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from agentgate.apps.api.response import API_VERSION
from agentgate.apps.api.routes.health import router as health_router
from agentgate.apps.api.routes.ops import router as ops_router
from agentgate.apps.api.routes.runs import router as runs_router
from agentgate.apps.api.routes.workspaces import router as workspaces_router
from agentgate.core.errors import GatewayError
from agentgate.core.logging import configure_logging
from agentgate.persistence.db import dispose_engine
from agentgate.services.telemetry import record_request


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Release pooled DB and model endpoint connections on shutdown.
    await dispose_engine()
    await close_invoker()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="AgentGate API", version=API_VERSION, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(GatewayError, gateway_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(runs_router, prefix=f"/{API_VERSION}")
    app.include_router(workspaces_router, prefix=f"/{API_VERSION}")
    # Ops metrics are in-process only and meant for operators, not clients.
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
