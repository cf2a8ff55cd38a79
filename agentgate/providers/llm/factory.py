from __future__ import annotations

from agentgate.core.config import get_settings
from agentgate.core.errors import ProviderConfigError
from agentgate.providers.llm.base import ModelInvoker
from agentgate.providers.llm.fake import FakeModelInvoker
from agentgate.providers.llm.http import HttpChatInvoker


def get_model_invoker() -> ModelInvoker:
    settings = get_settings()
    provider = (settings.llm_provider or "http").lower()

    if provider == "fake":
        return FakeModelInvoker()
    if provider == "http":
        return HttpChatInvoker()

    raise ProviderConfigError(f"Unsupported LLM provider: {provider}")
