from __future__ import annotations

import asyncio
import contextlib

import pytest
from fastapi import FastAPI
from starlette.requests import Request

from supportiq.apps.api import main
from supportiq.apps.api.rate_limit import client_ip, route_class_for_path
from supportiq.core.config import get_settings
from supportiq.services import rate_limit


def _make_request(headers: list[tuple[bytes, bytes]] | None = None) -> Request:
    # Construct a minimal ASGI scope for client address tests.
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/tickets",
        "scheme": "http",
        "server": ("test", 80),
        "client": ("10.0.0.9", 1234),
        "headers": headers or [],
        "query_string": b"",
    }
    return Request(scope)


@pytest.mark.asyncio
async def test_memory_window_allows_points_then_blocks() -> None:
    store = rate_limit.MemoryWindowStore()
    decisions = [
        await store.hit("k", points=2, duration_ms=1000, now_ms=0),
        await store.hit("k", points=2, duration_ms=1000, now_ms=100),
        await store.hit("k", points=2, duration_ms=1000, now_ms=200),
    ]
    assert [d.allowed for d in decisions] == [True, True, False]
    assert decisions[1].remaining == 0
    assert decisions[2].ms_before_next == 800

    reopened = await store.hit("k", points=2, duration_ms=1000, now_ms=1000)
    assert reopened.allowed is True
    assert reopened.remaining == 1


@pytest.mark.asyncio
async def test_memory_window_keys_are_independent_and_sweepable() -> None:
    store = rate_limit.MemoryWindowStore()
    await store.hit("a", points=1, duration_ms=1000, now_ms=0)
    other = await store.hit("b", points=1, duration_ms=5000, now_ms=0)
    assert other.allowed is True
    assert store.sweep(2000) == 1
    assert len(store) == 1


@pytest.mark.asyncio
async def test_limiter_uses_injected_clock() -> None:
    now = {"value": 100.0}
    limiter = rate_limit.FixedWindowRateLimiter(
        points=1,
        duration_s=60,
        key_prefix="test:auth",
        store=rate_limit.MemoryWindowStore(),
        time_provider=lambda: now["value"],
    )
    assert (await limiter.consume("user:1")).allowed
    blocked = await limiter.consume("user:1")
    assert blocked.allowed is False
    assert blocked.ms_before_next == 60000
    now["value"] += 60
    assert (await limiter.consume("user:1")).allowed


def test_get_limiter_reads_configured_budgets() -> None:
    limiter = rate_limit.get_limiter("sync")
    assert limiter.points == 3
    assert limiter.duration_s == 300
    assert limiter.key_prefix == "supportiq:rl:sync"
    assert rate_limit.get_limiter("sync") is limiter
    with pytest.raises(ValueError):
        rate_limit.get_limiter("unknown")


def test_route_class_mapping() -> None:
    assert route_class_for_path("/api/auth/sessions") == "auth"
    assert route_class_for_path("/api/webhooks/intercom") == "webhook"
    assert route_class_for_path("/api/stripe/webhooks") == "webhook"
    assert route_class_for_path("/api/intercom/sync/status") == "sync"
    assert route_class_for_path("/api/dashboard/metrics") == "dashboard"
    assert route_class_for_path("/api/tickets") == "api"


def test_client_ip_prefers_forwarded_headers() -> None:
    assert client_ip(_make_request()) == "10.0.0.9"
    forwarded = _make_request([(b"x-forwarded-for", b"203.0.113.5, 10.0.0.1")])
    assert client_ip(forwarded) == "203.0.113.5"
    real_ip = _make_request([(b"x-real-ip", b"198.51.100.7")])
    assert client_ip(real_ip) == "198.51.100.7"


@pytest.mark.asyncio
async def test_run_sweeper_drops_expired_windows() -> None:
    rate_limit.set_time_provider(lambda: 0.0)
    await rate_limit.get_limiter("auth").consume("ip:10.0.0.1")
    await rate_limit.get_limiter("api").consume("user:1")
    rate_limit.set_time_provider(None)
    store = rate_limit._get_store()
    assert len(store) == 2

    sweeper = asyncio.create_task(rate_limit.run_sweeper(0))
    try:
        for _ in range(5):
            await asyncio.sleep(0)
        assert len(store) == 0
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper


@pytest.mark.asyncio
async def test_lifespan_runs_sweeper_only_for_memory_backend(monkeypatch) -> None:
    started: list[int] = []
    stopped: list[int] = []

    async def fake_sweeper(interval_s: int) -> None:
        started.append(interval_s)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            stopped.append(interval_s)
            raise

    monkeypatch.setattr(main, "run_sweeper", fake_sweeper)
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    monkeypatch.setenv("RL_SWEEP_INTERVAL_S", "7")
    get_settings.cache_clear()
    async with main.lifespan(FastAPI()):
        await asyncio.sleep(0)
        assert started == [7]
    assert stopped == [7]

    monkeypatch.setenv("RATE_LIMIT_BACKEND", "redis")
    get_settings.cache_clear()
    async with main.lifespan(FastAPI()):
        await asyncio.sleep(0)
    assert started == [7]
