from __future__ import annotations

import asyncio
import logging
import time

from querybridge.core.config import get_settings
from querybridge.core.errors import ProviderConfigError, TranslationProviderError
from querybridge.providers.llm.base import Generation
from querybridge.services.resilience import CircuitBreaker, get_resilience_redis, retry_async
from querybridge.services.telemetry import record_external_call

logger = logging.getLogger(__name__)

_INTEGRATION = "llm.vertex"


class GeminiVertexProvider:
    name = "vertex"

    def __init__(self, *, breaker: CircuitBreaker | None = None) -> None:
        self._settings = get_settings()
        self._breaker = breaker

    def _validate_config(self) -> tuple[str, str, str]:
        # Fail fast to avoid confusing downstream SDK errors.
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        model = self._settings.gemini_model
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if not model:
            missing.append("GEMINI_MODEL")
        if missing:
            raise ProviderConfigError(f"Vertex config missing: set {', '.join(missing)} in .env.")
        return project, location, model

    async def generate(self, system_prompt: str, user_prompt: str) -> Generation:
        project, location, model_name = self._validate_config()

        try:
            from vertexai import init
            from vertexai.generative_models import GenerationConfig, GenerativeModel
            from google.auth.exceptions import DefaultCredentialsError, RefreshError
            from google.api_core.exceptions import (
                GoogleAPICallError,
                PermissionDenied,
                ResourceExhausted,
                Unauthenticated,
            )
        except ImportError as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError("Vertex AI SDK not available. Install google-cloud-aiplatform.") from exc

        if self._breaker is None:
            self._breaker = CircuitBreaker(_INTEGRATION, redis=await get_resilience_redis())
        breaker = self._breaker
        await breaker.before_call()

        def _generate():
            init(project=project, location=location)
            model = GenerativeModel(model_name, system_instruction=system_prompt)
            return model.generate_content(
                user_prompt,
                generation_config=GenerationConfig(
                    temperature=self._settings.llm_temperature,
                    max_output_tokens=self._settings.llm_max_tokens,
                    response_mime_type="application/json",
                ),
            )

        start = time.monotonic()
        logger.info("vertex_generate_start model=%s", model_name)
        try:
            response = await retry_async(lambda: asyncio.to_thread(_generate))
        except (DefaultCredentialsError, RefreshError, PermissionDenied, Unauthenticated) as exc:
            await breaker.record_failure()
            record_external_call(integration=_INTEGRATION, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            logger.warning("vertex_generate_auth_error model=%s", model_name)
            raise TranslationProviderError(
                "Vertex auth error: run `gcloud auth application-default login`."
            ) from exc
        except ResourceExhausted as exc:
            await breaker.record_failure()
            record_external_call(integration=_INTEGRATION, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            raise TranslationProviderError("Vertex quota exhausted; retry later.") from exc
        except (GoogleAPICallError, asyncio.TimeoutError, TimeoutError, OSError) as exc:
            await breaker.record_failure()
            record_external_call(integration=_INTEGRATION, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            logger.error("vertex_generate_error model=%s error=%s", model_name, type(exc).__name__)
            raise TranslationProviderError("Vertex AI request failed. Check credentials and model access.") from exc

        await breaker.record_success()
        record_external_call(integration=_INTEGRATION, latency_ms=(time.monotonic() - start) * 1000.0, success=True)
        try:
            text = response.text
        except ValueError as exc:
            # Blocked or empty candidates raise on .text access.
            raise TranslationProviderError("Vertex returned no usable candidate.") from exc
        usage = getattr(response, "usage_metadata", None)
        tokens = int(getattr(usage, "total_token_count", 0) or 0)
        return Generation(text=text, tokens_used=tokens)
