from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from agentgate.core.config import get_settings
from agentgate.core.errors import ProviderConfigError
from agentgate.providers.llm.base import (
    FAILURE_EMPTY_RESPONSE,
    FAILURE_QUOTA_EXHAUSTED,
    FAILURE_RATE_LIMITED,
    FAILURE_TRANSPORT,
    InvokeFailed,
    InvokeOk,
    InvokeResult,
)
from agentgate.services.costs.metering import estimate_tokens
from agentgate.services.routing import ModelRoute
from agentgate.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "llm.chat"


def _extract_text(body: Any) -> str | None:
    # Pull choices[0].message.content out of an OpenAI-compatible body.
    if not isinstance(body, dict):
        return None
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str) or not content.strip():
        return None
    return content


def _usage_counts(body: dict[str, Any], prompt_text: str, raw_text: str) -> tuple[int, int]:
    # Prefer provider usage counters; estimate from text length when they are absent.
    usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
    tokens_in = usage.get("prompt_tokens")
    tokens_out = usage.get("completion_tokens")
    if not isinstance(tokens_in, int):
        tokens_in = estimate_tokens(prompt_text)
    if not isinstance(tokens_out, int):
        tokens_out = estimate_tokens(raw_text)
    return tokens_in, tokens_out


def classify_status(status_code: int) -> str:
    if status_code == 429:
        return FAILURE_RATE_LIMITED
    if status_code == 402:
        return FAILURE_QUOTA_EXHAUSTED
    return FAILURE_TRANSPORT


class HttpChatInvoker:
    """Call an OpenAI-compatible chat completions endpoint.

    One request per invoke; retries and repair are the gateway's job. Every
    failure is returned as an ``InvokeFailed`` value except a missing
    credential, which is a configuration error raised before any call.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        api_url: str | None = None,
        api_key: str | None = None,
    ) -> None:
        self._settings = get_settings()
        self._client = client
        self._api_url = api_url or self._settings.llm_api_url
        self._api_key = api_key if api_key is not None else self._settings.llm_api_key

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per invoker for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def invoke(self, route: ModelRoute, system_text: str, user_text: str) -> InvokeResult:
        if not self._api_key:
            raise ProviderConfigError("LLM_API_KEY is required for the HTTP model invoker")

        payload = {
            "model": route.model_identifier,
            "messages": [
                {"role": "system", "content": system_text},
                {"role": "user", "content": user_text},
            ],
            "temperature": route.temperature,
            "max_tokens": route.max_output_tokens,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        client = self._get_client()

        start = time.monotonic()
        try:
            response = await client.post(self._api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("llm_call_transport_error model=%s error=%s", route.model_identifier, exc)
            return InvokeFailed(kind=FAILURE_TRANSPORT, detail=f"model request failed: {exc}")

        latency_ms = (time.monotonic() - start) * 1000.0
        if not response.is_success:
            record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=False)
            kind = classify_status(response.status_code)
            return InvokeFailed(
                kind=kind,
                detail=f"model endpoint returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            body = None
        raw_text = _extract_text(body)
        if raw_text is None:
            record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=False)
            return InvokeFailed(
                kind=FAILURE_EMPTY_RESPONSE,
                detail="model response contained no text",
                status_code=response.status_code,
            )

        record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=True)
        tokens_in, tokens_out = _usage_counts(body, system_text + user_text, raw_text)
        return InvokeOk(raw_text=raw_text, tokens_in=tokens_in, tokens_out=tokens_out)
