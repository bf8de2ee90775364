from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from supportiq.core.config import get_settings
from supportiq.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, httpx.TimeoutException, httpx.NetworkError)


def default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures and upstream 5xx/429s.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status >= 500 or status == 429):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    jitter: bool = True


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    name: str = "external",
) -> Any:
    # Retry helper with exponential backoff; non-retryable errors surface immediately.
    policy = policy or default_retry_policy()
    retryable = retryable or default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter(f"external_retries_total.{name}")
            logger.warning("retrying_call name=%s attempt=%s error=%s", name, attempt, type(exc).__name__)
            factor = random.uniform(0.5, 1.5) if policy.jitter else 1.0
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * factor
            await asyncio.sleep(sleep_s)
            attempt += 1
