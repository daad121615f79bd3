from __future__ import annotations

import json
from typing import Callable

from querybridge.providers.llm.base import Generation


_DEFAULT_RESPONSE = json.dumps(
    {
        "mongoQuery": {},
        "explain": "The fake provider does not translate questions.",
        "requiresIndexes": [],
        "safety": {"allowed": False, "reason": "Fake provider response"},
    }
)


class FakeLLMProvider:
    name = "fake"

    def __init__(
        self,
        response: str | Callable[[str, str], str] = _DEFAULT_RESPONSE,
        *,
        tokens_used: int = 42,
    ) -> None:
        # Deterministic responses keep translation tests stable without external calls.
        self._response = response
        self._tokens_used = tokens_used
        self.calls: list[tuple[str, str]] = []

    async def generate(self, system_prompt: str, user_prompt: str) -> Generation:
        self.calls.append((system_prompt, user_prompt))
        if callable(self._response):
            text = self._response(system_prompt, user_prompt)
        else:
            text = self._response
        return Generation(text=text, tokens_used=self._tokens_used)
