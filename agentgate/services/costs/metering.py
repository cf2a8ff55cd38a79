from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from agentgate.services.costs.pricing import PricingRate, estimate_cost, select_pricing_rate


# Rough characters-per-token ratio used when the provider omits usage counters.
DEFAULT_CHARS_PER_TOKEN = 4.0


@dataclass(frozen=True)
class CostEstimate:
    # Return computed cost plus the rate snapshot used to derive it.
    cost_usd: Decimal
    rate: PricingRate
    tokens_in: int
    tokens_out: int


def estimate_tokens(text: str, *, ratio: float = DEFAULT_CHARS_PER_TOKEN) -> int:
    # Deterministically estimate token counts when provider metadata is missing.
    if not text:
        return 0
    return max(1, int(len(text) / max(ratio, 0.1)))


def meter_run(model_identifier: str, tokens_in: int, tokens_out: int) -> CostEstimate:
    # Compute the single terminal cost figure for a run from its token totals.
    return CostEstimate(
        cost_usd=estimate_cost(model_identifier, tokens_in, tokens_out),
        rate=select_pricing_rate(model_identifier),
        tokens_in=max(tokens_in, 0),
        tokens_out=max(tokens_out, 0),
    )
