from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping


PURPOSE_ORCHESTRATION = "orchestration"
PURPOSE_VALIDATION = "validation"
PURPOSE_BULK_ANALYSIS = "bulk_analysis"
PURPOSE_CREATIVE = "creative"
PURPOSE_GENERIC_ANALYSIS = "generic_analysis"


@dataclass(frozen=True)
class ModelRoute:
    # Generation parameters selected for a purpose.
    model_identifier: str
    temperature: float
    max_output_tokens: int


class ModelRoutingTable:
    """Immutable purpose -> route lookup.

    Built once at process start and passed into the gateway. Purposes missing
    from the table resolve to the fallback purpose's route.
    """

    def __init__(
        self,
        routes: Mapping[str, ModelRoute],
        *,
        fallback_purpose: str = PURPOSE_GENERIC_ANALYSIS,
    ) -> None:
        if fallback_purpose not in routes:
            raise ValueError(f"fallback purpose {fallback_purpose!r} has no route")
        self._routes = MappingProxyType(dict(routes))
        self._fallback_purpose = fallback_purpose

    def resolve(self, purpose: str) -> ModelRoute:
        return self._routes.get(purpose) or self._routes[self._fallback_purpose]


def default_routing_table() -> ModelRoutingTable:
    return ModelRoutingTable(
        {
            PURPOSE_ORCHESTRATION: ModelRoute("openai/gpt-5.2", 0.3, 8192),
            PURPOSE_VALIDATION: ModelRoute("openai/gpt-5.2", 0.1, 4096),
            PURPOSE_BULK_ANALYSIS: ModelRoute("google/gemini-2.5-flash-lite", 0.2, 2048),
            PURPOSE_CREATIVE: ModelRoute("openai/gpt-5.2", 0.7, 4096),
            PURPOSE_GENERIC_ANALYSIS: ModelRoute("openai/gpt-5-mini", 0.3, 4096),
        }
    )
