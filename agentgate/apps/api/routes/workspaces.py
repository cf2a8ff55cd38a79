from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from agentgate.apps.api.deps import get_quota_policy
from agentgate.apps.api.openapi import LEDGER_ERROR_RESPONSES
from agentgate.apps.api.response import SuccessEnvelope, success_response
from agentgate.domain.schemas import TierUpdate, UsageOut
from agentgate.services.ledger import LedgerEntry
from agentgate.services.quota import QuotaPolicy, TierLimits, limits_for_tier

router = APIRouter(prefix="/workspaces", tags=["workspaces"], responses=LEDGER_ERROR_RESPONSES)


def _usage_out(workspace_id: str, entry: LedgerEntry, limits: TierLimits) -> UsageOut:
    return UsageOut(
        workspace_id=workspace_id,
        tier=entry.tier,
        requests_in_window=entry.requests_in_window,
        concurrent_runs=entry.concurrent_runs,
        spent_this_period=float(entry.spent_this_period),
        limits={
            "requests_per_minute": limits.requests_per_minute,
            "max_concurrent": limits.max_concurrent,
            "monthly_budget_usd": float(limits.monthly_budget_usd),
        },
    )


@router.get("/{workspace_id}/usage", response_model=SuccessEnvelope[UsageOut])
async def get_usage(
    request: Request,
    workspace_id: str,
    quota: QuotaPolicy = Depends(get_quota_policy),
) -> dict:
    # Ledger errors surface as 503; only admission fails open.
    entry, limits = await quota.usage(workspace_id)
    return success_response(request=request, data=_usage_out(workspace_id, entry, limits))


@router.put("/{workspace_id}/tier", response_model=SuccessEnvelope[UsageOut])
async def set_tier(
    request: Request,
    workspace_id: str,
    payload: TierUpdate,
    quota: QuotaPolicy = Depends(get_quota_policy),
) -> dict:
    await quota.set_tier(workspace_id, payload.tier)
    entry, limits = await quota.usage(workspace_id)
    return success_response(request=request, data=_usage_out(workspace_id, entry, limits))


@router.post("/{workspace_id}/billing-period/rollover", response_model=SuccessEnvelope[UsageOut])
async def rollover_billing_period(
    request: Request,
    workspace_id: str,
    quota: QuotaPolicy = Depends(get_quota_policy),
) -> dict:
    entry = await quota.rollover_period(workspace_id)
    return success_response(
        request=request, data=_usage_out(workspace_id, entry, limits_for_tier(entry.tier))
    )
