from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agentgate.domain.models import AgentRun, RunEvidence


STATUS_PENDING = "pending"


async def create_run(
    session: AsyncSession,
    *,
    run_id: str,
    workspace_id: str,
    actor_id: str | None,
    agent_name: str,
    purpose: str,
    model_identifier: str,
    input_fingerprint: str,
    input_json: dict[str, Any] | None,
) -> AgentRun:
    run = AgentRun(
        id=run_id,
        workspace_id=workspace_id,
        actor_id=actor_id,
        agent_name=agent_name,
        purpose=purpose,
        model_identifier=model_identifier,
        input_fingerprint=input_fingerprint,
        status=STATUS_PENDING,
        attempts=0,
        tokens_in=0,
        tokens_out=0,
        cost_estimate=Decimal("0"),
        input_json=input_json,
    )
    session.add(run)
    await session.flush()
    return run


async def complete_run(
    session: AsyncSession,
    run_id: str,
    *,
    status: str,
    attempts: int,
    tokens_in: int,
    tokens_out: int,
    cost_estimate: Decimal,
    duration_ms: int,
    output_json: dict[str, Any] | None,
    error_message: str | None,
    completed_at: datetime,
) -> bool:
    # Only a pending run may transition; terminal rows are never revisited.
    result = await session.execute(
        update(AgentRun)
        .where(AgentRun.id == run_id, AgentRun.status == STATUS_PENDING)
        .values(
            status=status,
            attempts=attempts,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_estimate=cost_estimate,
            duration_ms=duration_ms,
            output_json=output_json,
            error_message=error_message,
            completed_at=completed_at,
        )
    )
    return (result.rowcount or 0) == 1


async def get_run(session: AsyncSession, run_id: str) -> AgentRun | None:
    result = await session.execute(select(AgentRun).where(AgentRun.id == run_id))
    return result.scalar_one_or_none()


async def replace_evidence(
    session: AsyncSession,
    *,
    run_id: str,
    workspace_id: str,
    key_metrics: dict[str, Any],
    confidence: str,
    sources: list[str],
    reasoning_trace: list[str],
    generated_at: datetime,
) -> RunEvidence:
    # Delete and insert in the caller's transaction so readers see one bundle or the other.
    await session.execute(delete(RunEvidence).where(RunEvidence.run_id == run_id))
    evidence = RunEvidence(
        run_id=run_id,
        workspace_id=workspace_id,
        key_metrics_json=key_metrics,
        confidence=confidence,
        sources_json=sources,
        reasoning_trace_json=reasoning_trace,
        generated_at=generated_at,
    )
    session.add(evidence)
    await session.flush()
    return evidence


async def get_evidence(session: AsyncSession, run_id: str) -> RunEvidence | None:
    result = await session.execute(select(RunEvidence).where(RunEvidence.run_id == run_id))
    return result.scalar_one_or_none()
