from __future__ import annotations

import hashlib
import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import httpx

from supportiq.core.config import get_settings
from supportiq.core.errors import EmbeddingError, ProviderConfigError
from supportiq.services.resilience import retry_async
from supportiq.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")
_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class SimilarItem:
    id: str
    similarity: float
    payload: Any = None


def prepare_text(text: str, *, max_chars: int | None = None) -> str:
    # Collapse whitespace and truncate to the embedding model's input budget.
    limit = max_chars if max_chars is not None else get_settings().embedding_max_chars
    return _WS_RE.sub(" ", text).strip()[:limit]


def _hash_token(token: str, dim: int) -> tuple[int, float]:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    idx = int(digest[:8], 16) % dim
    sign = 1.0 if int(digest[8:12], 16) % 2 == 0 else -1.0
    magnitude = (int(digest[12:20], 16) % 1000) / 1000.0
    return idx, sign * (0.2 + magnitude)


def hashed_embedding(text: str, *, dim: int | None = None) -> list[float]:
    # Deterministic bag-of-tokens vector used when no embedding API is configured.
    size = dim or get_settings().embedding_dim
    vector = [0.0] * size
    tokens = _TOKEN_RE.findall(text.lower())
    if not tokens:
        return vector
    for token in tokens:
        idx, value = _hash_token(token, size)
        vector[idx] += value
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


def _use_remote() -> bool:
    settings = get_settings()
    return settings.llm_provider.lower() == "openai" and bool(settings.openai_api_key)


async def _request_embeddings(inputs: list[str], client: httpx.AsyncClient | None = None) -> list[list[float]]:
    settings = get_settings()
    if not settings.openai_api_key:
        raise ProviderConfigError("OPENAI_API_KEY is required for embeddings")
    url = f"{settings.openai_base_url.rstrip('/')}/embeddings"
    headers = {"Authorization": f"Bearer {settings.openai_api_key}"}
    payload = {"model": settings.openai_embedding_model, "input": inputs}
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=settings.ext_call_timeout_ms / 1000.0)
    start = time.monotonic()
    try:

        async def _call() -> httpx.Response:
            response = await http.post(url, json=payload, headers=headers)
            if response.status_code >= 500 or response.status_code == 429:
                error = EmbeddingError(f"OpenAI embeddings error: {response.status_code}")
                setattr(error, "status_code", response.status_code)
                raise error
            return response

        response = await retry_async(_call, name="openai.embeddings")
    except (httpx.HTTPError, TimeoutError) as exc:
        record_external_call(
            integration="openai.embeddings", latency_ms=(time.monotonic() - start) * 1000.0, success=False
        )
        raise EmbeddingError("OpenAI embeddings request failed.") from exc
    finally:
        if owns_client:
            await http.aclose()

    latency_ms = (time.monotonic() - start) * 1000.0
    if response.status_code >= 400:
        record_external_call(integration="openai.embeddings", latency_ms=latency_ms, success=False)
        raise EmbeddingError(f"OpenAI embeddings error: {response.status_code}")
    record_external_call(integration="openai.embeddings", latency_ms=latency_ms, success=True)
    try:
        data = response.json().get("data") or []
        # The API may reorder items; restore input order via the index field.
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [[float(value) for value in item["embedding"]] for item in ordered]
    except (ValueError, AttributeError, TypeError, KeyError) as exc:
        raise EmbeddingError("OpenAI embeddings response was malformed") from exc


async def embed_text(text: str, *, client: httpx.AsyncClient | None = None) -> list[float]:
    cleaned = prepare_text(text)
    if not _use_remote():
        return hashed_embedding(cleaned)
    vectors = await _request_embeddings([cleaned], client)
    if not vectors:
        raise EmbeddingError("OpenAI returned no embedding")
    return vectors[0]


async def embed_batch(texts: Sequence[str], *, client: httpx.AsyncClient | None = None) -> list[list[float]]:
    # Chunk requests to stay within the provider's per-call input limit.
    cleaned = [prepare_text(text) for text in texts]
    if not _use_remote():
        return [hashed_embedding(text) for text in cleaned]
    batch_size = max(1, get_settings().embedding_batch_size)
    vectors: list[list[float]] = []
    for offset in range(0, len(cleaned), batch_size):
        vectors.extend(await _request_embeddings(cleaned[offset : offset + batch_size], client))
    return vectors


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError("Vectors must have the same length")
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def find_similar(
    target: Sequence[float],
    candidates: Iterable[tuple[str, Sequence[float] | None, Any]],
    *,
    threshold: float = 0.8,
    max_results: int = 5,
) -> list[SimilarItem]:
    """Rank candidates by cosine similarity to ``target``.

    Candidates are ``(id, embedding, payload)`` tuples. Missing embeddings and
    dimension mismatches are skipped rather than failing the whole lookup.
    """
    matches: list[SimilarItem] = []
    for item_id, embedding, payload in candidates:
        if not embedding:
            continue
        try:
            score = cosine_similarity(target, embedding)
        except ValueError:
            logger.warning("embedding_dimension_mismatch id=%s", item_id)
            continue
        if score >= threshold:
            matches.append(SimilarItem(id=item_id, similarity=score, payload=payload))
    matches.sort(key=lambda item: item.similarity, reverse=True)
    return matches[:max_results]
