from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from agentgate.core.config import get_settings
from agentgate.persistence.db import get_session_factory
from agentgate.providers.llm.base import ModelInvoker
from agentgate.providers.llm.factory import get_model_invoker
from agentgate.services.evidence import EvidenceRecorder
from agentgate.services.gateway import OrchestrationGateway
from agentgate.services.ledger import get_ledger_store
from agentgate.services.quota import QuotaPolicy
from agentgate.services.routing import ModelRoutingTable, default_routing_table
from agentgate.services.runs import RunStore, SqlRunStore


_run_store: RunStore | None = None
_invoker: ModelInvoker | None = None


@lru_cache
def get_routing_table() -> ModelRoutingTable:
    # Built once per process and shared by every gateway instance.
    return default_routing_table()


def get_run_store() -> RunStore:
    global _run_store
    if _run_store is None:
        _run_store = SqlRunStore(get_session_factory())
    return _run_store


def get_invoker() -> ModelInvoker:
    # Share one invoker so HTTP connections are pooled across requests.
    global _invoker
    if _invoker is None:
        _invoker = get_model_invoker()
    return _invoker


async def close_invoker() -> None:
    # Release the shared invoker's HTTP connection pool on shutdown.
    global _invoker
    invoker, _invoker = _invoker, None
    aclose = getattr(invoker, "aclose", None)
    if aclose is not None:
        await aclose()


def get_quota_policy() -> QuotaPolicy:
    return QuotaPolicy(get_ledger_store())


def get_evidence_recorder(run_store: RunStore = Depends(get_run_store)) -> EvidenceRecorder | None:
    settings = get_settings()
    if not settings.evidence_enabled:
        return None
    return EvidenceRecorder(run_store, max_metrics=settings.evidence_max_metrics)


def get_gateway(
    routing: ModelRoutingTable = Depends(get_routing_table),
    quota: QuotaPolicy = Depends(get_quota_policy),
    invoker: ModelInvoker = Depends(get_invoker),
    run_store: RunStore = Depends(get_run_store),
    evidence: EvidenceRecorder | None = Depends(get_evidence_recorder),
) -> OrchestrationGateway:
    return OrchestrationGateway(
        routing=routing,
        quota=quota,
        invoker=invoker,
        run_store=run_store,
        evidence=evidence,
        max_attempts=get_settings().gateway_max_attempts,
    )


def reset_dependency_state() -> None:
    # Drop cached stores and invokers for deterministic test setup.
    global _run_store, _invoker
    _run_store = None
    _invoker = None
    get_routing_table.cache_clear()
