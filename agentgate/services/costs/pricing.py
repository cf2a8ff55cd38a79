from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Mapping


_PER_MILLION = Decimal("1000000")
_QUANTUM = Decimal("0.000001")

DEFAULT_PRICING_MODEL = "openai/gpt-5-mini"


@dataclass(frozen=True)
class PricingRate:
    # Capture a stable pricing snapshot for deterministic cost calculations.
    model_identifier: str
    input_usd_per_million: Decimal
    output_usd_per_million: Decimal


PRICE_TABLE: Mapping[str, PricingRate] = MappingProxyType(
    {
        "openai/gpt-5.2": PricingRate("openai/gpt-5.2", Decimal("1.75"), Decimal("14.00")),
        "openai/gpt-5-mini": PricingRate("openai/gpt-5-mini", Decimal("0.25"), Decimal("2.00")),
        "google/gemini-2.5-flash-lite": PricingRate(
            "google/gemini-2.5-flash-lite", Decimal("0.10"), Decimal("0.40")
        ),
        "google/gemini-3-flash-preview": PricingRate(
            "google/gemini-3-flash-preview", Decimal("0.50"), Decimal("3.00")
        ),
    }
)


def select_pricing_rate(model_identifier: str) -> PricingRate:
    # Unknown models price as the default model; estimation must never block a response.
    return PRICE_TABLE.get(model_identifier) or PRICE_TABLE[DEFAULT_PRICING_MODEL]


def _to_decimal(value: float | int | Decimal) -> Decimal:
    # Normalize numeric values to Decimal for consistent rounding.
    return value if isinstance(value, Decimal) else Decimal(str(value))


def estimate_cost(model_identifier: str, tokens_in: int, tokens_out: int) -> Decimal:
    # Pure per-million-token pricing; negative counts are treated as zero.
    rate = select_pricing_rate(model_identifier)
    input_tokens = max(_to_decimal(tokens_in), Decimal("0"))
    output_tokens = max(_to_decimal(tokens_out), Decimal("0"))
    cost = (input_tokens / _PER_MILLION) * rate.input_usd_per_million + (
        output_tokens / _PER_MILLION
    ) * rate.output_usd_per_million
    return cost.quantize(_QUANTUM, rounding=ROUND_HALF_UP)
