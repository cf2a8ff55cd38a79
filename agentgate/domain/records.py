from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any


RUN_STATUS_PENDING = "pending"
RUN_STATUS_SUCCESS = "success"
RUN_STATUS_RETRY = "retry"
RUN_STATUS_FALLBACK = "fallback"
RUN_STATUS_ERROR = "error"

# Runs that produced an artifact worth deriving evidence from.
EVIDENCE_STATUSES = frozenset({RUN_STATUS_SUCCESS, RUN_STATUS_RETRY, RUN_STATUS_FALLBACK})


@dataclass(frozen=True)
class RunRecord:
    # Storage-independent view of an agent run.
    id: str
    workspace_id: str
    actor_id: str | None
    agent_name: str
    purpose: str
    model_identifier: str
    input_fingerprint: str
    status: str = RUN_STATUS_PENDING
    attempts: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    cost_estimate: Decimal = Decimal("0")
    duration_ms: int | None = None
    input: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class EvidenceBundleData:
    run_id: str
    workspace_id: str
    key_metrics: dict[str, float] = field(default_factory=dict)
    confidence: str = "low"
    sources: tuple[str, ...] = ()
    reasoning_trace: tuple[str, ...] = ()
    generated_at: datetime | None = None
