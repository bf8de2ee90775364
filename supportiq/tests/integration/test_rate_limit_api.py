from __future__ import annotations

import pytest

from supportiq.core.config import get_settings
from supportiq.tests.utils.auth import create_test_user


# Enable the in-memory limiter with small windows for this module's tests.
def _enable_rate_limits(monkeypatch, **points: int) -> None:
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memory")
    for name, value in points.items():
        monkeypatch.setenv(f"RL_{name.upper()}_POINTS", str(value))
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_auth_limiter_blocks_by_ip(client, monkeypatch) -> None:
    _enable_rate_limits(monkeypatch)
    for i in range(5):
        response = await client.post("/api/auth/sessions", json={"email": f"burst{i}@example.com"})
        assert response.status_code == 200
    assert response.headers["X-RateLimit-Remaining"] == "0"

    blocked = await client.post("/api/auth/sessions", json={"email": "burst-last@example.com"})
    assert blocked.status_code == 429
    assert blocked.json()["code"] == "RATE_LIMITED"
    assert blocked.json()["details"]["limiter"] == "auth"
    assert 1 <= int(blocked.headers["Retry-After"]) <= 900

    other_ip = await client.post(
        "/api/auth/sessions", json={"email": "elsewhere@example.com"}, headers={"X-Forwarded-For": "203.0.113.9"}
    )
    assert other_ip.status_code == 200


@pytest.mark.asyncio
async def test_dashboard_limiter_is_per_user(client, monkeypatch) -> None:
    _enable_rate_limits(monkeypatch, dashboard=2)
    _first, first_headers = await create_test_user()
    _second, second_headers = await create_test_user()

    for _ in range(2):
        assert (await client.get("/api/dashboard/metrics", headers=first_headers)).status_code == 200
    assert (await client.get("/api/dashboard/metrics", headers=first_headers)).status_code == 429
    assert (await client.get("/api/dashboard/metrics", headers=second_headers)).status_code == 200


@pytest.mark.asyncio
async def test_sync_limiter_allows_three_starts(client, monkeypatch) -> None:
    _enable_rate_limits(monkeypatch)
    _user, headers = await create_test_user()
    statuses = [(await client.post("/api/intercom/sync", headers=headers)).status_code for _ in range(4)]
    # Unconnected accounts fail validation, but every attempt still consumes a point.
    assert statuses == [400, 400, 400, 429]
