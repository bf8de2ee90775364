from __future__ import annotations

import pytest

from supportiq.tests.utils.auth import create_test_user


@pytest.mark.asyncio
async def test_trial_start_and_status(client) -> None:
    _user, headers = await create_test_user()

    before = await client.get("/api/trial/status", headers=headers)
    assert before.json() == {"has_trial": False, "trial": None, "days_remaining": 0, "is_expired": False}

    started = await client.post("/api/trial/start", headers=headers)
    assert started.status_code == 200
    trial = started.json()["trial"]
    assert trial["status"] == "active"
    assert trial["limits"]["ai_responses"] == 100

    # Starting again while active returns the same trial.
    again = await client.post("/api/trial/start", headers=headers)
    assert again.json()["trial"]["id"] == trial["id"]

    status = await client.get("/api/trial/status", headers=headers)
    body = status.json()
    assert body["has_trial"] is True
    assert body["days_remaining"] == 14
    assert body["remaining"]["ai_responses_used"] == 100

    profile = await client.get("/api/user/profile", headers=headers)
    assert profile.json()["user"]["subscription_status"] == "trialing"


@pytest.mark.asyncio
async def test_trial_remaining_reflects_usage(client) -> None:
    _user, headers = await create_test_user(with_trial=True, trial_usage={"ai_responses_used": 40})
    status = await client.get("/api/trial/status", headers=headers)
    assert status.json()["remaining"]["ai_responses_used"] == 60
    assert status.json()["trial"]["usage"]["ai_responses_used"] == 40
