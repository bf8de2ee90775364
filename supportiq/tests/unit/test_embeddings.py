from __future__ import annotations

import json
import math

import httpx
import pytest

from supportiq.core.config import get_settings
from supportiq.core.errors import EmbeddingError
from supportiq.providers.embeddings import (
    cosine_similarity,
    embed_batch,
    embed_text,
    find_similar,
    hashed_embedding,
    prepare_text,
)


def _use_openai(monkeypatch) -> None:
    monkeypatch.setenv("LLM_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("EXT_RETRY_MAX_ATTEMPTS", "2")
    get_settings.cache_clear()


def test_hashed_embedding_is_deterministic_and_normalized() -> None:
    first = hashed_embedding("reset my password", dim=64)
    second = hashed_embedding("reset my password", dim=64)
    assert first == second
    assert len(first) == 64
    assert math.isclose(math.sqrt(sum(v * v for v in first)), 1.0, rel_tol=1e-9)
    assert hashed_embedding("", dim=8) == [0.0] * 8


def test_prepare_text_collapses_whitespace_and_truncates() -> None:
    assert prepare_text("  hello \n\n world  ", max_chars=100) == "hello world"
    assert prepare_text("abcdef", max_chars=3) == "abc"


def test_cosine_similarity_edges() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1.0], [1.0, 2.0])


def test_find_similar_filters_sorts_and_skips_bad_vectors() -> None:
    target = [1.0, 0.0]
    candidates = [
        ("close", [0.9, 0.1], None),
        ("exact", [1.0, 0.0], None),
        ("far", [0.0, 1.0], None),
        ("missing", None, None),
        ("wrong-dim", [1.0, 0.0, 0.0], None),
    ]
    matches = find_similar(target, candidates, threshold=0.8, max_results=5)
    assert [item.id for item in matches] == ["exact", "close"]
    assert len(find_similar(target, candidates, threshold=0.8, max_results=1)) == 1


@pytest.mark.asyncio
async def test_embed_text_uses_local_vectors_without_api_key() -> None:
    vector = await embed_text("billing question")
    assert len(vector) == get_settings().embedding_dim


@pytest.mark.asyncio
async def test_embed_batch_restores_input_order(monkeypatch) -> None:
    _use_openai(monkeypatch)
    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        data = [
            {"index": index, "embedding": [float(index), 1.0]}
            for index in reversed(range(len(body["input"])))
        ]
        return httpx.Response(200, json={"data": data})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        vectors = await embed_batch(["first", "second", "third"], client=client)

    assert vectors == [[0.0, 1.0], [1.0, 1.0], [2.0, 1.0]]
    assert requests[0]["model"] == "text-embedding-3-small"


@pytest.mark.asyncio
async def test_embed_text_retries_transient_errors_then_fails(monkeypatch) -> None:
    _use_openai(monkeypatch)
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503, json={"error": "unavailable"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(EmbeddingError):
            await embed_text("hello", client=client)
    assert calls["count"] == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    [
        httpx.Response(200, text="<html>gateway hiccup</html>"),
        httpx.Response(200, json={"data": "not-a-list"}),
        httpx.Response(200, json={"data": [{"index": 0}]}),
        httpx.Response(200, json={"data": [{"index": 0, "embedding": ["x", "y"]}]}),
    ],
)
async def test_malformed_embedding_bodies_raise_embedding_error(monkeypatch, reply: httpx.Response) -> None:
    _use_openai(monkeypatch)
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: reply)) as client:
        with pytest.raises(EmbeddingError):
            await embed_text("hello", client=client)
