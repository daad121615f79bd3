from __future__ import annotations

import json

import httpx
import pytest

from querybridge.core.config import get_settings
from querybridge.core.errors import ProviderConfigError, TranslationProviderError
from querybridge.providers.llm.factory import get_llm_provider
from querybridge.providers.llm.fake import FakeLLMProvider
from querybridge.providers.llm.gemini_vertex import GeminiVertexProvider
from querybridge.providers.llm.openai_chat import OpenAIChatProvider
from querybridge.services.resilience import CircuitBreaker, CircuitBreakerConfig


def _completion(content: str, tokens: int = 128) -> dict:
    return {"choices": [{"message": {"content": content}}], "usage": {"total_tokens": tokens}}


def _provider(handler, monkeypatch) -> OpenAIChatProvider:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("EXT_RETRY_BACKOFF_MS", "1")
    get_settings.cache_clear()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    breaker = CircuitBreaker(
        "llm.openai.test",
        config=CircuitBreakerConfig(failure_threshold=5, open_seconds=30, half_open_trials=1),
    )
    return OpenAIChatProvider(client=client, breaker=breaker)


@pytest.mark.asyncio
async def test_openai_returns_text_and_tokens(monkeypatch) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_completion('{"sqlQuery": "SELECT 1"}'))

    provider = _provider(handler, monkeypatch)
    generation = await provider.generate("system text", "user text")

    assert generation.text == '{"sqlQuery": "SELECT 1"}'
    assert generation.tokens_used == 128
    (request,) = seen
    assert request.url.path.endswith("/chat/completions")
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["response_format"] == {"type": "json_object"}
    assert body["temperature"] == 0.0
    assert [message["role"] for message in body["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_openai_retries_a_server_error_once(monkeypatch) -> None:
    statuses = [503, 200]

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.pop(0)
        if status != 200:
            return httpx.Response(status, json={"error": "unavailable"})
        return httpx.Response(200, json=_completion("{}"))

    provider = _provider(handler, monkeypatch)
    generation = await provider.generate("s", "u")
    assert generation.text == "{}"
    assert statuses == []


@pytest.mark.asyncio
async def test_openai_gives_up_after_repeated_server_errors(monkeypatch) -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(500, json={"error": "boom"})

    provider = _provider(handler, monkeypatch)
    with pytest.raises(TranslationProviderError) as excinfo:
        await provider.generate("s", "u")
    assert excinfo.value.status_code == 500
    assert calls == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403, 429, 400])
async def test_openai_client_errors_are_not_retried(monkeypatch, status) -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(status, json={"error": "nope"})

    provider = _provider(handler, monkeypatch)
    with pytest.raises(TranslationProviderError) as excinfo:
        await provider.generate("s", "u")
    assert excinfo.value.status_code == status
    assert calls == 1


@pytest.mark.asyncio
async def test_openai_requires_an_api_key(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_settings.cache_clear()
    provider = OpenAIChatProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: None)))
    with pytest.raises(TranslationProviderError):
        await provider.generate("s", "u")


@pytest.mark.asyncio
async def test_openai_unexpected_payload_is_a_provider_error(monkeypatch) -> None:
    provider = _provider(lambda request: httpx.Response(200, json={"choices": []}), monkeypatch)
    with pytest.raises(TranslationProviderError):
        await provider.generate("s", "u")


@pytest.mark.asyncio
async def test_vertex_fails_fast_without_project_settings(monkeypatch) -> None:
    monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
    monkeypatch.delenv("GOOGLE_CLOUD_LOCATION", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError) as excinfo:
        await GeminiVertexProvider().generate("s", "u")
    assert "GOOGLE_CLOUD_PROJECT" in excinfo.value.message
    assert "GOOGLE_CLOUD_LOCATION" in excinfo.value.message


@pytest.mark.parametrize(
    ("name", "expected"),
    [("fake", FakeLLMProvider), ("openai", OpenAIChatProvider), ("vertex", GeminiVertexProvider)],
)
def test_factory_selects_the_configured_provider(monkeypatch, name, expected) -> None:
    monkeypatch.setenv("LLM_PROVIDER", name)
    get_settings.cache_clear()
    assert isinstance(get_llm_provider(), expected)


def test_factory_rejects_unknown_providers(monkeypatch) -> None:
    monkeypatch.setenv("LLM_PROVIDER", "mystery")
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_llm_provider()


@pytest.mark.asyncio
async def test_fake_provider_records_calls() -> None:
    provider = FakeLLMProvider(lambda system, user: f"echo:{user}", tokens_used=3)
    generation = await provider.generate("sys", "hello")
    assert generation.text == "echo:hello"
    assert generation.tokens_used == 3
    assert provider.calls == [("sys", "hello")]
