from __future__ import annotations

from typing import Any

import pytest

from supportiq.apps.api.routes.dashboard import get_dashboard_service
from supportiq.services.dashboard import DashboardDataService
from supportiq.tests.utils.auth import create_test_user, seed_tickets


async def _failing_fetcher(user_id: str) -> dict[str, Any]:
    raise RuntimeError("metrics store offline")


@pytest.mark.asyncio
async def test_dashboard_metrics_cache_miss_then_hit(client) -> None:
    owner, headers = await create_test_user()
    await seed_tickets(
        owner.id,
        [
            {"status": "open", "category": "Billing", "sentiment": "negative"},
            {"status": "closed", "category": "Billing", "sentiment": "positive"},
        ],
    )

    first = await client.get("/api/dashboard/metrics", headers=headers)
    assert first.status_code == 200
    assert first.headers["X-Cache"] == "MISS"
    data = first.json()["data"]
    assert data["total_tickets"] == 2
    assert data["open_tickets"] == 1
    assert data["categories"][0]["name"] == "Billing"

    second = await client.get("/api/dashboard/metrics", headers=headers)
    assert second.headers["X-Cache"] == "HIT"
    assert second.json()["from_cache"] is True

    refreshed = await client.get("/api/dashboard/metrics", params={"refresh": "true"}, headers=headers)
    assert refreshed.headers["X-Cache"] == "MISS"


@pytest.mark.asyncio
async def test_ticket_writes_invalidate_dashboard_cache(client) -> None:
    _owner, headers = await create_test_user()
    empty = await client.get("/api/dashboard/metrics", headers=headers)
    assert empty.json()["data"]["total_tickets"] == 0

    await client.post(
        "/api/tickets/upload",
        content="subject,description,status\nHello,Where can I find my invoices?,open\n",
        headers={**headers, "Content-Type": "text/csv"},
    )
    after = await client.get("/api/dashboard/metrics", headers=headers)
    assert after.headers["X-Cache"] == "MISS"
    assert after.json()["data"]["total_tickets"] == 1


@pytest.mark.asyncio
async def test_dashboard_unavailable_without_cached_copy(app, client) -> None:
    _owner, headers = await create_test_user()
    app.dependency_overrides[get_dashboard_service] = lambda: DashboardDataService(fetcher=_failing_fetcher)

    response = await client.get("/api/dashboard/metrics", headers=headers)
    assert response.status_code == 503
    assert response.json()["code"] == "NO_DATA"
    assert response.headers["Retry-After"] == "60"


@pytest.mark.asyncio
async def test_dashboard_requires_authentication(client) -> None:
    response = await client.get("/api/dashboard/metrics")
    assert response.status_code == 401
