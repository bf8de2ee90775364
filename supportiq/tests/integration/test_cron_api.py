from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import update

from supportiq.core.config import get_settings
from supportiq.domain.models import Trial, utc_now
from supportiq.persistence.db import SessionLocal
from supportiq.tests.utils.auth import create_test_user, seed_tickets


CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


@pytest.mark.asyncio
async def test_cron_endpoints_require_secret(client, monkeypatch) -> None:
    missing = await client.post("/api/cron/trial-expiration")
    assert missing.status_code == 401
    wrong = await client.post("/api/cron/daily-analysis", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401

    monkeypatch.setenv("CRON_SECRET", "")
    get_settings.cache_clear()
    unconfigured = await client.post("/api/cron/trial-expiration", headers=CRON_HEADERS)
    assert unconfigured.status_code == 503
    assert unconfigured.json()["code"] == "CRON_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_trial_expiration_job(client) -> None:
    owner, headers = await create_test_user(with_trial=True)
    await create_test_user(with_trial=True)
    async with SessionLocal() as session:
        await session.execute(
            update(Trial).where(Trial.user_id == owner.id).values(expires_at=utc_now() - timedelta(hours=1))
        )
        await session.commit()

    response = await client.post("/api/cron/trial-expiration", headers=CRON_HEADERS)
    assert response.status_code == 200
    assert response.json()["expired"] == 1

    status = await client.get("/api/trial/status", headers=headers)
    assert status.json()["trial"]["status"] == "expired"
    assert status.json()["is_expired"] is True


@pytest.mark.asyncio
async def test_daily_analysis_job(client, fake_llm) -> None:
    owner, headers = await create_test_user(intercom_token="intercom-token")
    await seed_tickets(owner.id, [{"subject": f"Question {i}"} for i in range(6)])

    response = await client.post("/api/cron/daily-analysis", headers=CRON_HEADERS)
    assert response.status_code == 200
    results = response.json()["results"]
    assert results["accounts"] == 1
    assert results["analyzed_tickets"] == 6
    assert results["errors"] == 0
    assert len(fake_llm.calls) == 6

    insights = await client.get("/api/insights", headers=headers)
    assert insights.status_code == 200
    assert len(insights.json()["insights"]) == results["insights_generated"]
