from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class FunctionSpec:
    name: str
    description: str
    parameters: dict[str, Any]


@dataclass(frozen=True)
class ChatResult:
    content: str | None
    function_arguments: dict[str, Any] | None = None
    total_tokens: int = 0
    model: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class LLMProvider(Protocol):
    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
        function: FunctionSpec | None = None,
    ) -> ChatResult:
        ...
