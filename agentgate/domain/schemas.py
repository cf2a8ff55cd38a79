from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from agentgate.domain.artifacts import AgentArtifact


class RunInstructions(BaseModel):
    system: str = Field(min_length=1)
    user: str = Field(min_length=1)
    context: dict[str, Any] | None = None

    @field_validator("system", "user", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        # Whitespace-only instructions count as missing.
        return value.strip() if isinstance(value, str) else value


class RunRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    actor_id: str | None = None
    agent_name: str = Field(min_length=1)
    # Unknown purposes are accepted and routed to generic_analysis.
    purpose: str = Field(min_length=1)
    instructions: RunInstructions

    @field_validator("workspace_id", "agent_name", "purpose", "actor_id", mode="before")
    @classmethod
    def _strip_identifiers(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class RunUsage(BaseModel):
    tokens_in: int
    tokens_out: int
    cost_estimate: float
    duration_ms: int


class RunResponse(BaseModel):
    success: bool
    status: str
    run_id: str
    artifact: AgentArtifact
    usage: RunUsage
    attempts: int
    error: str | None = None


class RunRecordOut(BaseModel):
    id: str
    workspace_id: str
    actor_id: str | None
    agent_name: str
    purpose: str
    model_identifier: str
    input_fingerprint: str
    status: str
    attempts: int
    tokens_in: int
    tokens_out: int
    cost_estimate: float
    duration_ms: int | None
    output: dict[str, Any] | None
    error_message: str | None
    created_at: datetime | None
    completed_at: datetime | None


class EvidenceOut(BaseModel):
    run_id: str
    key_metrics: dict[str, float]
    confidence: str
    sources: list[str]
    reasoning_trace: list[str]
    generated_at: datetime | None


class TierUpdate(BaseModel):
    tier: str = Field(min_length=1)


class UsageOut(BaseModel):
    workspace_id: str
    tier: str
    requests_in_window: int
    concurrent_runs: int
    spent_this_period: float
    limits: dict[str, float | int]
