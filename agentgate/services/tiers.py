from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:
    from agentgate.services.ledger import LedgerEntry


DEFAULT_TIER = "free"

REASON_RATE_LIMIT = "rate_limit_exceeded"
REASON_CONCURRENCY = "concurrency_limit_exceeded"
REASON_BUDGET = "budget_exhausted"

DENIAL_MESSAGES: Mapping[str, str] = MappingProxyType(
    {
        REASON_RATE_LIMIT: "rate limit exceeded",
        REASON_CONCURRENCY: "max concurrent runs exceeded",
        REASON_BUDGET: "monthly budget exhausted",
    }
)


@dataclass(frozen=True)
class TierLimits:
    # Per-subscription ceilings enforced at admission time.
    requests_per_minute: int
    max_concurrent: int
    monthly_budget_usd: Decimal


TIER_LIMITS: Mapping[str, TierLimits] = MappingProxyType(
    {
        "free": TierLimits(10, 2, Decimal("5.00")),
        "starter": TierLimits(30, 5, Decimal("25.00")),
        "growth": TierLimits(60, 10, Decimal("100.00")),
        "agency": TierLimits(120, 20, Decimal("500.00")),
    }
)


def limits_for_tier(tier: str | None) -> TierLimits:
    # Unknown or missing tiers get the free ceilings.
    return TIER_LIMITS.get(tier or DEFAULT_TIER) or TIER_LIMITS[DEFAULT_TIER]


def evaluate(entry: LedgerEntry, limits: TierLimits) -> str | None:
    """Return the first failing check's reason code, or None when admissible.

    Checks run in a fixed order (rate, concurrency, budget) and only the first
    failure is reported.
    """
    if entry.requests_in_window >= limits.requests_per_minute:
        return REASON_RATE_LIMIT
    if entry.concurrent_runs >= limits.max_concurrent:
        return REASON_CONCURRENCY
    if entry.spent_this_period >= limits.monthly_budget_usd:
        return REASON_BUDGET
    return None
