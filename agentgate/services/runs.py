from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentgate.core.errors import RunPersistenceError
from agentgate.domain.models import AgentRun, RunEvidence
from agentgate.domain.records import EvidenceBundleData, RunRecord
from agentgate.persistence.repos import runs as runs_repo


class RunStore(Protocol):
    async def create_pending(self, record: RunRecord) -> None: ...

    async def complete(self, record: RunRecord) -> bool: ...

    async def get(self, run_id: str) -> RunRecord | None: ...

    async def replace_evidence(self, bundle: EvidenceBundleData) -> None: ...

    async def get_evidence(self, run_id: str) -> EvidenceBundleData | None: ...


def record_from_model(run: AgentRun) -> RunRecord:
    return RunRecord(
        id=run.id,
        workspace_id=run.workspace_id,
        actor_id=run.actor_id,
        agent_name=run.agent_name,
        purpose=run.purpose,
        model_identifier=run.model_identifier,
        input_fingerprint=run.input_fingerprint,
        status=run.status,
        attempts=run.attempts or 0,
        tokens_in=run.tokens_in or 0,
        tokens_out=run.tokens_out or 0,
        cost_estimate=Decimal(str(run.cost_estimate or 0)),
        duration_ms=run.duration_ms,
        input=run.input_json,
        output=run.output_json,
        error_message=run.error_message,
        created_at=run.created_at,
        completed_at=run.completed_at,
    )


def bundle_from_model(evidence: RunEvidence) -> EvidenceBundleData:
    return EvidenceBundleData(
        run_id=evidence.run_id,
        workspace_id=evidence.workspace_id,
        key_metrics=dict(evidence.key_metrics_json or {}),
        confidence=evidence.confidence,
        sources=tuple(evidence.sources_json or ()),
        reasoning_trace=tuple(evidence.reasoning_trace_json or ()),
        generated_at=evidence.generated_at,
    )


class SqlRunStore:
    """Run records and evidence bundles on SQLAlchemy async sessions.

    Database errors are re-raised as ``RunPersistenceError``; callers decide
    whether a failed write is fatal.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_pending(self, record: RunRecord) -> None:
        async with self._session_factory() as session:
            try:
                await runs_repo.create_run(
                    session,
                    run_id=record.id,
                    workspace_id=record.workspace_id,
                    actor_id=record.actor_id,
                    agent_name=record.agent_name,
                    purpose=record.purpose,
                    model_identifier=record.model_identifier,
                    input_fingerprint=record.input_fingerprint,
                    input_json=record.input,
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise RunPersistenceError(f"failed to create run {record.id}") from exc

    async def complete(self, record: RunRecord) -> bool:
        async with self._session_factory() as session:
            try:
                updated = await runs_repo.complete_run(
                    session,
                    record.id,
                    status=record.status,
                    attempts=record.attempts,
                    tokens_in=record.tokens_in,
                    tokens_out=record.tokens_out,
                    cost_estimate=record.cost_estimate,
                    duration_ms=record.duration_ms or 0,
                    output_json=record.output,
                    error_message=record.error_message,
                    completed_at=record.completed_at or datetime.now(timezone.utc),
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise RunPersistenceError(f"failed to complete run {record.id}") from exc
        return updated

    async def get(self, run_id: str) -> RunRecord | None:
        async with self._session_factory() as session:
            try:
                run = await runs_repo.get_run(session, run_id)
            except SQLAlchemyError as exc:
                raise RunPersistenceError(f"failed to load run {run_id}") from exc
            return record_from_model(run) if run is not None else None

    async def replace_evidence(self, bundle: EvidenceBundleData) -> None:
        async with self._session_factory() as session:
            try:
                await runs_repo.replace_evidence(
                    session,
                    run_id=bundle.run_id,
                    workspace_id=bundle.workspace_id,
                    key_metrics=dict(bundle.key_metrics),
                    confidence=bundle.confidence,
                    sources=list(bundle.sources),
                    reasoning_trace=list(bundle.reasoning_trace),
                    generated_at=bundle.generated_at or datetime.now(timezone.utc),
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise RunPersistenceError(f"failed to store evidence for {bundle.run_id}") from exc

    async def get_evidence(self, run_id: str) -> EvidenceBundleData | None:
        async with self._session_factory() as session:
            try:
                evidence = await runs_repo.get_evidence(session, run_id)
            except SQLAlchemyError as exc:
                raise RunPersistenceError(f"failed to load evidence for {run_id}") from exc
            return bundle_from_model(evidence) if evidence is not None else None
