from __future__ import annotations

from querybridge.core.config import get_settings
from querybridge.core.errors import ProviderConfigError
from querybridge.providers.llm.base import LLMProvider
from querybridge.providers.llm.fake import FakeLLMProvider
from querybridge.providers.llm.gemini_vertex import GeminiVertexProvider
from querybridge.providers.llm.openai_chat import OpenAIChatProvider


def get_llm_provider() -> LLMProvider:
    settings = get_settings()
    provider = (settings.llm_provider or "openai").lower()

    if provider == "fake":
        return FakeLLMProvider()
    if provider == "vertex":
        return GeminiVertexProvider()
    if provider == "openai":
        return OpenAIChatProvider()
    raise ProviderConfigError(f"Unsupported LLM_PROVIDER: {settings.llm_provider}")
