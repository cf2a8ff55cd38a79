from __future__ import annotations

from decimal import Decimal
from typing import AsyncIterator

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from agentgate.apps.api import deps
from agentgate.apps.api.deps import get_invoker, get_quota_policy, get_run_store
from agentgate.apps.api.main import create_app
from agentgate.core.errors import LedgerUnavailableError, ProviderConfigError
from agentgate.providers.llm.base import InvokeFailed, InvokeOk
from agentgate.providers.llm.fake import FakeModelInvoker
from agentgate.providers.llm.http import HttpChatInvoker
from agentgate.services.ledger import InMemoryLedgerStore, LedgerEntry
from agentgate.services.quota import QuotaPolicy
from agentgate.services.runs import SqlRunStore
from agentgate.tests.utils.builders import artifact_json, make_request
from agentgate.tests.utils.clock import FakeClock
from agentgate.tests.utils.ledger import UnavailableLedgerStore


class _Harness:
    def __init__(self, run_store: SqlRunStore, clock: FakeClock) -> None:
        self.ledger = InMemoryLedgerStore(time_provider=clock)
        self.invoker = FakeModelInvoker()
        self.run_store = run_store
        self.app = create_app()
        self.app.dependency_overrides[get_run_store] = lambda: self.run_store
        self.app.dependency_overrides[get_quota_policy] = lambda: QuotaPolicy(self.ledger)
        self.app.dependency_overrides[get_invoker] = lambda: self.invoker


@pytest.fixture
def harness(run_store: SqlRunStore, clock: FakeClock) -> _Harness:
    return _Harness(run_store, clock)


@pytest.fixture
async def client(harness: _Harness) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=harness.app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


def _payload(**overrides) -> dict:
    return make_request(**overrides).model_dump(mode="json")


@pytest.mark.asyncio
async def test_health_is_enveloped(client: AsyncClient) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok"}
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_run_success_persists_record_and_evidence(client: AsyncClient, harness: _Harness) -> None:
    harness.invoker.push(InvokeOk(raw_text=artifact_json(), tokens_in=1_000, tokens_out=500))
    response = await client.post("/v1/runs", json=_payload())
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["success"] is True
    assert data["status"] == "success"
    assert data["attempts"] == 1
    assert data["usage"]["tokens_in"] == 1_000
    assert data["usage"]["cost_estimate"] == pytest.approx(0.00125)
    assert data["artifact"]["actions"][0]["kind"] == "auto_safe"

    run_id = data["run_id"]
    record = await client.get(f"/v1/runs/{run_id}")
    assert record.status_code == 200
    assert record.json()["data"]["status"] == "success"
    assert record.json()["data"]["model_identifier"] == "openai/gpt-5-mini"

    evidence = await client.get(f"/v1/runs/{run_id}/evidence")
    assert evidence.status_code == 200
    evidence_data = evidence.json()["data"]
    assert evidence_data["confidence"] == "medium"
    assert evidence_data["key_metrics"]["actions_total"] == 2

    rerecorded = await client.post(f"/v1/runs/{run_id}/evidence")
    assert rerecorded.status_code == 200
    assert rerecorded.json()["data"]["key_metrics"] == evidence_data["key_metrics"]


@pytest.mark.asyncio
async def test_fallback_run_is_returned_with_200(client: AsyncClient, harness: _Harness) -> None:
    harness.invoker.push(
        InvokeFailed(kind="quota_exhausted", detail="model endpoint returned 402", status_code=402)
    )
    response = await client.post("/v1/runs", json=_payload())
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["success"] is True
    assert data["status"] == "fallback"
    assert data["artifact"]["requires_approval"] is True
    assert data["error"] == "model endpoint returned 402"


@pytest.mark.asyncio
async def test_quota_denial_maps_to_429(client: AsyncClient, harness: _Harness, clock: FakeClock) -> None:
    harness.ledger.seed("ws-1", LedgerEntry(requests_in_window=10, last_request_at=clock()))
    response = await client.post("/v1/runs", json=_payload())
    assert response.status_code == 429
    error = response.json()["error"]
    assert error["code"] == "QUOTA_EXCEEDED"
    assert error["message"] == "rate limit exceeded"
    assert error["details"] == {"status": "quota_exceeded", "reason": "rate_limit_exceeded"}
    assert harness.invoker.calls == []


@pytest.mark.asyncio
async def test_invalid_request_is_rejected_before_admission(client: AsyncClient, harness: _Harness) -> None:
    payload = _payload()
    payload["instructions"]["user"] = "   "
    del payload["agent_name"]
    response = await client.post("/v1/runs", json=payload)
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert len(response.json()["error"]["details"]["errors"]) == 2
    assert (await harness.ledger.snapshot("ws-1")).requests_in_window == 0
    assert harness.invoker.calls == []


@pytest.mark.asyncio
async def test_unknown_run_is_404(client: AsyncClient) -> None:
    response = await client.get("/v1/runs/missing")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_evidence_for_error_run_is_409(client: AsyncClient, harness: _Harness) -> None:
    class _UnconfiguredInvoker:
        async def invoke(self, route, system_text, user_text):
            raise ProviderConfigError("LLM_API_KEY is required")

    harness.invoker = _UnconfiguredInvoker()
    response = await client.post("/v1/runs", json=_payload())
    data = response.json()["data"]
    assert data["status"] == "error"
    conflict = await client.post(f"/v1/runs/{data['run_id']}/evidence")
    assert conflict.status_code == 409
    assert conflict.json()["error"]["details"] == {"status": "error"}


@pytest.mark.asyncio
async def test_workspace_usage_tier_and_rollover(client: AsyncClient, harness: _Harness) -> None:
    updated = await client.put("/v1/workspaces/ws-9/tier", json={"tier": "growth"})
    assert updated.status_code == 200
    assert updated.json()["data"]["limits"]["requests_per_minute"] == 60

    await harness.ledger.add_cost("ws-9", Decimal("12.50"))
    usage = await client.get("/v1/workspaces/ws-9/usage")
    assert usage.json()["data"]["spent_this_period"] == 12.5
    assert usage.json()["data"]["tier"] == "growth"

    rolled = await client.post("/v1/workspaces/ws-9/billing-period/rollover")
    assert rolled.status_code == 200
    assert rolled.json()["data"]["spent_this_period"] == 0

    unknown = await client.put("/v1/workspaces/ws-9/tier", json={"tier": "platinum"})
    assert unknown.status_code == 422
    assert unknown.json()["error"]["code"] == "UNKNOWN_TIER"


@pytest.mark.asyncio
async def test_usage_reports_503_when_ledger_is_down(client: AsyncClient, harness: _Harness) -> None:
    class _DownStore(UnavailableLedgerStore):
        async def snapshot(self, workspace_id: str):
            raise LedgerUnavailableError("redis down")

    harness.app.dependency_overrides[get_quota_policy] = lambda: QuotaPolicy(_DownStore())
    response = await client.get("/v1/workspaces/ws-1/usage")
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "LEDGER_UNAVAILABLE"


@pytest.mark.asyncio
async def test_ops_metrics_expose_counters(client: AsyncClient, harness: _Harness) -> None:
    harness.invoker.push(InvokeOk(raw_text="nope", tokens_in=1, tokens_out=1))
    harness.invoker.push(InvokeOk(raw_text=artifact_json(), tokens_in=1, tokens_out=1))
    await client.post("/v1/runs", json=_payload())
    response = await client.get("/v1/ops/metrics")
    assert response.status_code == 200
    counters = response.json()["data"]["counters"]
    assert counters["gateway_runs_retry_total"] == 1


@pytest.mark.asyncio
async def test_shutdown_closes_the_shared_invoker(monkeypatch) -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    monkeypatch.setattr(deps, "_invoker", HttpChatInvoker(client, api_key="sk-test"))
    app = create_app()
    async with app.router.lifespan_context(app):
        assert not client.is_closed
    assert client.is_closed
    assert deps._invoker is None
