from __future__ import annotations

import logging

from supportiq.core.config import get_settings
from supportiq.providers.llm.base import LLMProvider
from supportiq.providers.llm.fake import FakeLLMProvider
from supportiq.providers.llm.openai_chat import OpenAIChatProvider


logger = logging.getLogger(__name__)

# One provider per configuration so the underlying HTTP pool is reused across requests.
_shared_providers: dict[tuple[str, str | None, str], LLMProvider | None] = {}


def get_llm_provider() -> LLMProvider | None:
    # None signals demo mode: callers fall back to heuristic analysis.
    settings = get_settings()
    provider = (settings.llm_provider or "openai").lower()

    if provider == "fake":
        return FakeLLMProvider()
    if provider == "none" or not settings.openai_api_key:
        return None
    return OpenAIChatProvider()


def get_shared_llm_provider() -> LLMProvider | None:
    settings = get_settings()
    key = ((settings.llm_provider or "openai").lower(), settings.openai_api_key, settings.openai_base_url)
    if key not in _shared_providers:
        _shared_providers[key] = get_llm_provider()
    return _shared_providers[key]


async def close_llm_providers() -> None:
    providers = [provider for provider in _shared_providers.values() if provider is not None]
    _shared_providers.clear()
    for provider in providers:
        aclose = getattr(provider, "aclose", None)
        if aclose is not None:
            await aclose()
    if providers:
        logger.info("llm_providers_closed count=%s", len(providers))
