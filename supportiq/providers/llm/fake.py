from __future__ import annotations

import json
from typing import Any

from supportiq.core.errors import LLMError
from supportiq.providers.llm.base import ChatResult, FunctionSpec


DEFAULT_ANALYSIS: dict[str, Any] = {
    "category": "How-to",
    "subcategory": "General Question",
    "priority": "medium",
    "sentiment": "neutral",
    "sentimentScore": 0.0,
    "deflectionPotential": "medium",
    "confidence": 0.7,
    "keywords": ["help"],
    "intent": "Customer needs guidance",
    "estimatedResolutionTime": 15,
    "requiresHuman": False,
    "tags": ["how-to"],
}

DEFAULT_FUNCTION_ARGS: dict[str, Any] = {
    "response_content": "Thanks for reaching out! Here is how to resolve this.",
    "response_type": "auto_resolve",
    "confidence_score": 0.9,
    "reasoning": "Matched a known resolution.",
}


class FakeLLMProvider:
    def __init__(
        self,
        content: str | dict[str, Any] | None = None,
        *,
        function_arguments: dict[str, Any] | None = None,
        total_tokens: int = 150,
        fail: bool = False,
    ) -> None:
        # Deterministic replies keep tests stable without external calls.
        if content is None:
            content = DEFAULT_ANALYSIS
        self._content = content if isinstance(content, str) else json.dumps(content)
        self._function_arguments = function_arguments or dict(DEFAULT_FUNCTION_ARGS)
        self._total_tokens = total_tokens
        self._fail = fail
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
        function: FunctionSpec | None = None,
    ) -> ChatResult:
        self.calls.append(
            {
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "json_mode": json_mode,
                "function": function.name if function else None,
            }
        )
        if self._fail:
            raise LLMError("fake provider failure")
        if function is not None:
            return ChatResult(
                content=None,
                function_arguments=dict(self._function_arguments),
                total_tokens=self._total_tokens,
                model="fake",
            )
        return ChatResult(content=self._content, total_tokens=self._total_tokens, model="fake")
