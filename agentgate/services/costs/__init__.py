from __future__ import annotations

# Re-export cost services for centralized imports.

from agentgate.services.costs.metering import CostEstimate, estimate_tokens, meter_run
from agentgate.services.costs.pricing import (
    DEFAULT_PRICING_MODEL,
    PRICE_TABLE,
    PricingRate,
    estimate_cost,
    select_pricing_rate,
)

__all__ = [
    "CostEstimate",
    "estimate_tokens",
    "meter_run",
    "DEFAULT_PRICING_MODEL",
    "PRICE_TABLE",
    "PricingRate",
    "estimate_cost",
    "select_pricing_rate",
]
