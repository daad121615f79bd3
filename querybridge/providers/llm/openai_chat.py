from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from querybridge.core.config import get_settings
from querybridge.core.errors import TranslationProviderError
from querybridge.providers.llm.base import Generation
from querybridge.services.resilience import CircuitBreaker, get_resilience_redis, retry_async
from querybridge.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "llm.openai"


def _retryable(exc: Exception) -> bool:
    # One retry for timeouts, network blips and 5xx; never for 4xx.
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class OpenAIChatProvider:
    """OpenAI-compatible chat completions endpoint returning a JSON object."""

    name = "openai"

    def __init__(self, client: httpx.AsyncClient | None = None, *, breaker: CircuitBreaker | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker = breaker

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is None:
            self._breaker = CircuitBreaker(_INTEGRATION, redis=await get_resilience_redis())
        return self._breaker

    def _failure(self, message: str, start: float, status_code: int | None = None) -> TranslationProviderError:
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        error = TranslationProviderError(message)
        if status_code is not None:
            setattr(error, "status_code", status_code)
        return error

    async def generate(self, system_prompt: str, user_prompt: str) -> Generation:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise TranslationProviderError("OpenAI provider is not configured: set OPENAI_API_KEY")

        payload: dict[str, Any] = {
            "model": self._settings.openai_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self._settings.llm_temperature,
            "max_tokens": self._settings.llm_max_tokens,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"
        client = self._get_client()
        breaker = await self._get_breaker()
        start = time.monotonic()
        await breaker.before_call()

        async def _call() -> httpx.Response:
            response = await client.post(url, json=payload, headers=headers)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        try:
            response = await retry_async(_call, retryable=_retryable)
        except (httpx.HTTPError, asyncio.TimeoutError, TimeoutError) as exc:
            await breaker.record_failure()
            status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
            logger.warning("llm_request_failed provider=openai error=%s status=%s", type(exc).__name__, status)
            raise self._failure("The language model provider is unavailable", start, status) from exc

        if response.status_code in {401, 403}:
            raise self._failure("Language model provider rejected the credentials", start, response.status_code)
        if response.status_code == 429:
            raise self._failure("Language model provider quota or rate limit exceeded", start, 429)
        if response.status_code >= 400:
            raise self._failure(f"Language model provider error: {response.status_code}", start, response.status_code)

        try:
            data = response.json()
            text = data["choices"][0]["message"]["content"]
            tokens = int((data.get("usage") or {}).get("total_tokens") or 0)
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            await breaker.record_failure()
            raise self._failure("Language model provider returned an unexpected payload", start) from exc
        if not isinstance(text, str):
            raise self._failure("Language model provider returned no text", start)

        await breaker.record_success()
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        logger.info("llm_request_ok provider=openai model=%s tokens=%s", self._settings.openai_model, tokens)
        return Generation(text=text, tokens_used=tokens)
