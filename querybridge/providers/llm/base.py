from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class Generation:
    text: str
    tokens_used: int


class LLMProvider(Protocol):
    name: str

    async def generate(self, system_prompt: str, user_prompt: str) -> Generation:
        ...
