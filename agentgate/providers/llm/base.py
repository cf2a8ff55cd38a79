from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Union

from agentgate.services.routing import ModelRoute


FAILURE_RATE_LIMITED = "rate_limited"
FAILURE_QUOTA_EXHAUSTED = "quota_exhausted"
FAILURE_TRANSPORT = "transport_error"
FAILURE_EMPTY_RESPONSE = "empty_response"


@dataclass(frozen=True)
class InvokeOk:
    raw_text: str
    tokens_in: int
    tokens_out: int


@dataclass(frozen=True)
class InvokeFailed:
    # Provider failures are values, not exceptions; the gateway maps them to fallback.
    kind: str
    detail: str
    status_code: int | None = None


InvokeResult = Union[InvokeOk, InvokeFailed]


class ModelInvoker(Protocol):
    async def invoke(self, route: ModelRoute, system_text: str, user_text: str) -> InvokeResult:
        ...
