from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Iterable

from agentgate.providers.llm.base import InvokeFailed, InvokeOk, InvokeResult
from agentgate.services.costs.metering import estimate_tokens
from agentgate.services.routing import ModelRoute


_DEFAULT_ARTIFACT = (
    '{"summary": "Fake analysis completed.", "actions": [], "risks": [], '
    '"dependencies": [], "metrics_to_watch": [], "requires_approval": false}'
)


@dataclass(frozen=True)
class InvokeCall:
    route: ModelRoute
    system_text: str
    user_text: str


class FakeModelInvoker:
    def __init__(self, results: Iterable[InvokeResult | str] | None = None) -> None:
        # Scripted results keep tests deterministic without external calls.
        self._results: deque[InvokeResult | str] = deque(results or [])
        self.calls: list[InvokeCall] = []

    def push(self, result: InvokeResult | str) -> None:
        self._results.append(result)

    async def invoke(self, route: ModelRoute, system_text: str, user_text: str) -> InvokeResult:
        self.calls.append(InvokeCall(route=route, system_text=system_text, user_text=user_text))
        # Replay the script in order, then fall back to a minimal valid artifact.
        result = self._results.popleft() if self._results else _DEFAULT_ARTIFACT
        if isinstance(result, str):
            return InvokeOk(
                raw_text=result,
                tokens_in=estimate_tokens(system_text + user_text),
                tokens_out=estimate_tokens(result),
            )
        if isinstance(result, (InvokeOk, InvokeFailed)):
            return result
        raise TypeError(f"unsupported scripted result: {result!r}")
