from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging

from agentgate.core.errors import LedgerUnavailableError, UnknownTierError
from agentgate.services.ledger import LedgerEntry, LedgerStore
from agentgate.services.telemetry import increment_counter
from agentgate.services.tiers import (
    DENIAL_MESSAGES,
    TIER_LIMITS,
    TierLimits,
    evaluate,
    limits_for_tier,
)


logger = logging.getLogger(__name__)

__all__ = [
    "AdmissionDecision",
    "QuotaPolicy",
    "TIER_LIMITS",
    "TierLimits",
    "evaluate",
    "limits_for_tier",
]


@dataclass(frozen=True)
class AdmissionDecision:
    # Outcome of admission; degraded means the ledger was unreachable and the run was let through.
    allowed: bool
    reason: str | None = None
    message: str | None = None
    degraded: bool = False


class QuotaPolicy:
    """Admit or deny runs against a workspace's tier limits.

    Admission and the begin increment happen in one ledger call, so two
    concurrent admissions can never both see the pre-increment counts. When
    the ledger cannot be reached the policy fails open with a degraded
    decision instead of silently denying.
    """

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def admit(self, workspace_id: str) -> AdmissionDecision:
        try:
            outcome = await self._store.try_begin(workspace_id)
        except LedgerUnavailableError as exc:
            increment_counter("quota_degraded_total")
            logger.warning(
                "quota_ledger_degraded workspace_id=%s error=%s",
                workspace_id,
                exc,
                exc_info=exc,
            )
            return AdmissionDecision(allowed=True, degraded=True)
        if not outcome.admitted:
            increment_counter(f"quota_denied_{outcome.reason}")
            return AdmissionDecision(
                allowed=False,
                reason=outcome.reason,
                message=DENIAL_MESSAGES.get(outcome.reason or "", outcome.reason),
            )
        return AdmissionDecision(allowed=True)

    async def end(self, workspace_id: str) -> None:
        await self._store.end(workspace_id)

    async def add_cost(self, workspace_id: str, amount: Decimal) -> None:
        await self._store.add_cost(workspace_id, amount)

    async def usage(self, workspace_id: str) -> tuple[LedgerEntry, TierLimits]:
        # Snapshot plus the limits that currently apply to the workspace.
        entry = await self._store.snapshot(workspace_id)
        return entry, limits_for_tier(entry.tier)

    async def set_tier(self, workspace_id: str, tier: str) -> None:
        if tier not in TIER_LIMITS:
            raise UnknownTierError(f"unknown tier: {tier}")
        await self._store.set_tier(workspace_id, tier)
        logger.info("workspace_tier_set workspace_id=%s tier=%s", workspace_id, tier)

    async def rollover_period(self, workspace_id: str) -> LedgerEntry:
        # Billing-period rollover is the only way spend goes down.
        await self._store.rollover_period(workspace_id)
        logger.info("billing_period_rollover workspace_id=%s", workspace_id)
        return await self._store.snapshot(workspace_id)
