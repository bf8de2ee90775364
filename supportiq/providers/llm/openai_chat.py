from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from supportiq.core.config import get_settings
from supportiq.core.errors import LLMError, ProviderConfigError
from supportiq.providers.llm.base import ChatResult, FunctionSpec
from supportiq.services.resilience import retry_async
from supportiq.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class OpenAIChatProvider:
    def __init__(self, client: httpx.AsyncClient | None = None, *, api_key: str | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._api_key = api_key or self._settings.openai_api_key

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
        function: FunctionSpec | None = None,
        model: str | None = None,
    ) -> ChatResult:
        if not self._api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for OpenAI completions")

        payload: dict[str, Any] = {
            "model": model or self._settings.openai_chat_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        if function is not None:
            # Force a single function call so the reply is always structured.
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": function.name,
                        "description": function.description,
                        "parameters": function.parameters,
                    },
                }
            ]
            payload["tool_choice"] = {"type": "function", "function": {"name": function.name}}

        headers = {"Authorization": f"Bearer {self._api_key}"}
        client = self._get_client()
        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"
        start = time.monotonic()

        async def _call() -> httpx.Response:
            response = await client.post(url, json=payload, headers=headers)
            if response.status_code >= 500 or response.status_code == 429:
                error = LLMError(f"OpenAI error: {response.status_code}")
                setattr(error, "status_code", response.status_code)
                raise error
            return response

        try:
            response = await retry_async(_call, name="openai.chat")
        except (httpx.HTTPError, TimeoutError, LLMError) as exc:
            record_external_call(
                integration="openai.chat",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            if isinstance(exc, LLMError):
                raise
            raise LLMError("OpenAI chat request failed.") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code in {401, 403}:
            record_external_call(integration="openai.chat", latency_ms=latency_ms, success=False)
            raise ProviderConfigError("OpenAI auth error: check OPENAI_API_KEY.")
        if response.status_code >= 400:
            record_external_call(integration="openai.chat", latency_ms=latency_ms, success=False)
            raise LLMError(f"OpenAI error: {response.status_code}")

        record_external_call(integration="openai.chat", latency_ms=latency_ms, success=True)
        try:
            body = response.json()
        except ValueError as exc:
            raise LLMError("OpenAI returned a non-JSON body") from exc
        return _parse_completion(body, function)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _parse_completion(body: Any, function: FunctionSpec | None) -> ChatResult:
    if not isinstance(body, dict):
        raise LLMError("OpenAI returned an unexpected body")
    try:
        return _build_result(body, function)
    except (AttributeError, TypeError, KeyError, IndexError, ValueError) as exc:
        raise LLMError("OpenAI response had an unexpected shape") from exc


def _build_result(body: dict[str, Any], function: FunctionSpec | None) -> ChatResult:
    choices = body.get("choices") or []
    if not choices:
        raise LLMError("OpenAI returned no choices")
    message = choices[0].get("message") or {}
    usage = body.get("usage") or {}
    arguments: dict[str, Any] | None = None
    if function is not None:
        tool_calls = message.get("tool_calls") or []
        raw_args = None
        if tool_calls:
            raw_args = (tool_calls[0].get("function") or {}).get("arguments")
        elif message.get("function_call"):
            raw_args = message["function_call"].get("arguments")
        if raw_args is None:
            raise LLMError("OpenAI response did not include a function call")
        try:
            arguments = json.loads(raw_args)
        except ValueError as exc:
            raise LLMError("OpenAI function arguments were not valid JSON") from exc
    return ChatResult(
        content=message.get("content"),
        function_arguments=arguments,
        total_tokens=int(usage.get("total_tokens") or 0),
        model=body.get("model"),
        raw=body,
    )
