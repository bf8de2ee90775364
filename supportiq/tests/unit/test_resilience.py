from __future__ import annotations

import asyncio

import httpx
import pytest

from supportiq.core.errors import LLMError
from supportiq.services.resilience import RetryPolicy, default_retryable, retry_async
from supportiq.services.telemetry import counters_snapshot


# Zero backoff keeps retry tests fast and deterministic.
FAST = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=0, jitter=False)


def test_default_retryable_classifies_failures() -> None:
    assert default_retryable(TimeoutError()) is True
    assert default_retryable(httpx.ConnectError("boom")) is True
    assert default_retryable(_status_error(503)) is True
    assert default_retryable(_status_error(429)) is True
    assert default_retryable(_status_error(400)) is False
    assert default_retryable(ValueError("bad input")) is False


def _status_error(status: int) -> Exception:
    error = LLMError("upstream failure")
    setattr(error, "status_code", status)
    return error


@pytest.mark.asyncio
async def test_retry_async_recovers_from_transient_failures() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise TimeoutError()
        return "ok"

    assert await retry_async(flaky, policy=FAST, name="unit") == "ok"
    assert calls["count"] == 3
    assert counters_snapshot()["external_retries_total.unit"] == 2


@pytest.mark.asyncio
async def test_retry_async_surfaces_non_retryable_errors_immediately() -> None:
    calls = {"count": 0}

    async def broken() -> None:
        calls["count"] += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await retry_async(broken, policy=FAST)
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_applies_per_attempt_timeout() -> None:
    async def slow() -> None:
        await asyncio.sleep(1)

    policy = RetryPolicy(timeout_ms=10, max_attempts=2, backoff_ms=0, jitter=False)
    with pytest.raises(TimeoutError):
        await retry_async(slow, policy=policy)
