from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from agentgate.apps.api.deps import get_evidence_recorder, get_gateway, get_run_store
from agentgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES, RUN_ERROR_RESPONSES
from agentgate.apps.api.response import SuccessEnvelope, success_response
from agentgate.domain.records import EVIDENCE_STATUSES, EvidenceBundleData, RunRecord
from agentgate.domain.schemas import EvidenceOut, RunRecordOut, RunRequest, RunResponse
from agentgate.services.evidence import EvidenceRecorder
from agentgate.services.gateway import STATUS_QUOTA_EXCEEDED, OrchestrationGateway
from agentgate.services.runs import RunStore

router = APIRouter(prefix="/runs", tags=["runs"], responses=DEFAULT_ERROR_RESPONSES)


def _not_found(run_id: str, what: str = "Run") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "NOT_FOUND", "message": f"{what} not found", "run_id": run_id},
    )


def _record_out(record: RunRecord) -> RunRecordOut:
    return RunRecordOut(
        id=record.id,
        workspace_id=record.workspace_id,
        actor_id=record.actor_id,
        agent_name=record.agent_name,
        purpose=record.purpose,
        model_identifier=record.model_identifier,
        input_fingerprint=record.input_fingerprint,
        status=record.status,
        attempts=record.attempts,
        tokens_in=record.tokens_in,
        tokens_out=record.tokens_out,
        cost_estimate=float(record.cost_estimate),
        duration_ms=record.duration_ms,
        output=record.output,
        error_message=record.error_message,
        created_at=record.created_at,
        completed_at=record.completed_at,
    )


def _evidence_out(bundle: EvidenceBundleData) -> EvidenceOut:
    return EvidenceOut(
        run_id=bundle.run_id,
        key_metrics=dict(bundle.key_metrics),
        confidence=bundle.confidence,
        sources=list(bundle.sources),
        reasoning_trace=list(bundle.reasoning_trace),
        generated_at=bundle.generated_at,
    )


@router.post("", response_model=SuccessEnvelope[RunResponse], responses=RUN_ERROR_RESPONSES)
async def create_run(
    request: Request,
    payload: RunRequest,
    gateway: OrchestrationGateway = Depends(get_gateway),
) -> dict:
    result = await gateway.run(payload)
    if result.status == STATUS_QUOTA_EXCEEDED:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "QUOTA_EXCEEDED",
                "message": result.error or "quota exceeded",
                "status": STATUS_QUOTA_EXCEEDED,
                "reason": result.reason,
            },
        )
    return success_response(request=request, data=result.to_response())


@router.get("/{run_id}", response_model=SuccessEnvelope[RunRecordOut])
async def get_run(
    request: Request,
    run_id: str,
    run_store: RunStore = Depends(get_run_store),
) -> dict:
    record = await run_store.get(run_id)
    if record is None:
        raise _not_found(run_id)
    return success_response(request=request, data=_record_out(record))


@router.get("/{run_id}/evidence", response_model=SuccessEnvelope[EvidenceOut])
async def get_run_evidence(
    request: Request,
    run_id: str,
    run_store: RunStore = Depends(get_run_store),
) -> dict:
    bundle = await run_store.get_evidence(run_id)
    if bundle is None:
        raise _not_found(run_id, "Evidence bundle")
    return success_response(request=request, data=_evidence_out(bundle))


@router.post("/{run_id}/evidence", response_model=SuccessEnvelope[EvidenceOut])
async def record_run_evidence(
    request: Request,
    run_id: str,
    run_store: RunStore = Depends(get_run_store),
    recorder: EvidenceRecorder | None = Depends(get_evidence_recorder),
) -> dict:
    record = await run_store.get(run_id)
    if record is None:
        raise _not_found(run_id)
    if record.status not in EVIDENCE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "EVIDENCE_NOT_AVAILABLE",
                "message": f"Evidence is not derived for {record.status} runs",
                "status": record.status,
            },
        )
    if recorder is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "EVIDENCE_DISABLED", "message": "Evidence recording is disabled"},
        )
    # Storage failures propagate here so the caller sees a 503 instead of a silent skip.
    bundle = await recorder.record(record, best_effort=False)
    return success_response(request=request, data=_evidence_out(bundle))
