from __future__ import annotations

from datetime import timedelta

import pytest

from supportiq.core.errors import SupportIQError, TrialLimitExceededError
from supportiq.domain.models import Trial, User, utc_now
from supportiq.persistence.db import SessionLocal
from supportiq.services import trial as trial_service
from supportiq.tests.utils.auth import create_test_user


@pytest.mark.asyncio
async def test_start_trial_is_idempotent_while_active() -> None:
    owner, _headers = await create_test_user()
    async with SessionLocal() as session:
        user = await session.get(User, owner.id)
        trial = await trial_service.start_trial(session, user)
        again = await trial_service.start_trial(session, user)
        await session.commit()
    assert again.id == trial.id
    assert trial.limits["ai_responses"] == 100
    assert trial.usage == trial_service.empty_usage()
    assert user.subscription_status == "trialing"
    assert (trial.expires_at - trial.started_at) == timedelta(days=14)


@pytest.mark.asyncio
async def test_start_trial_rejects_second_trial_after_expiry() -> None:
    owner, _headers = await create_test_user()
    async with SessionLocal() as session:
        user = await session.get(User, owner.id)
        await trial_service.start_trial(session, user)
        assert await trial_service.expire_trial(session, owner.id) is True
        with pytest.raises(SupportIQError) as excinfo:
            await trial_service.start_trial(session, user)
    assert excinfo.value.code == "TRIAL_ALREADY_USED"


@pytest.mark.asyncio
async def test_usage_tracking_and_limit_enforcement() -> None:
    owner, _headers = await create_test_user(with_trial=True, trial_usage={"ai_responses_used": 98})
    async with SessionLocal() as session:
        check = await trial_service.check_trial_limits(session, owner.id, "ai_responses_used")
        assert (check.allowed, check.remaining, check.limit, check.used) == (True, 2, 100, 98)

        await trial_service.track_usage(session, owner.id, "ai_responses_used", 2)
        with pytest.raises(TrialLimitExceededError) as excinfo:
            await trial_service.enforce_trial_limit(session, owner.id, "ai_responses_used")
        assert excinfo.value.context == {"limit": 100, "used": 100}

        with pytest.raises(ValueError):
            await trial_service.track_usage(session, owner.id, "unknown_counter")


@pytest.mark.asyncio
async def test_accounts_without_trial_are_not_metered() -> None:
    owner, _headers = await create_test_user()
    async with SessionLocal() as session:
        await trial_service.enforce_trial_limit(session, owner.id, "tickets_processed")
        assert await trial_service.track_usage(session, owner.id, "tickets_processed") is None
        status = await trial_service.get_trial_status(session, owner.id)
    assert status.trial is None
    assert status.days_remaining == 0
    assert status.is_expired is False


@pytest.mark.asyncio
async def test_trial_status_counts_days_remaining() -> None:
    owner, _headers = await create_test_user(with_trial=True)
    async with SessionLocal() as session:
        status = await trial_service.get_trial_status(session, owner.id)
        later = await trial_service.get_trial_status(session, owner.id, now=utc_now() + timedelta(days=15))
    assert status.days_remaining == 14
    assert status.is_expired is False
    assert later.days_remaining == 0
    assert later.is_expired is True


@pytest.mark.asyncio
async def test_expire_overdue_trials_keeps_paying_accounts_active() -> None:
    lapsed, _ = await create_test_user(with_trial=True)
    paying, _ = await create_test_user(with_trial=True)
    async with SessionLocal() as session:
        paid_user = await session.get(User, paying.id)
        paid_user.subscription_status = "active"
        await session.commit()

    async with SessionLocal() as session:
        expired = await trial_service.expire_overdue_trials(session, now=utc_now() + timedelta(days=20))
        await session.commit()
    assert expired == 2

    async with SessionLocal() as session:
        assert (await session.get(User, lapsed.id)).subscription_status == "expired"
        assert (await session.get(User, paying.id)).subscription_status == "active"


@pytest.mark.asyncio
async def test_conversion_records_plan_and_metrics() -> None:
    owner, _headers = await create_test_user(with_trial=True)
    async with SessionLocal() as session:
        user = await session.get(User, owner.id)
        trial = await trial_service.convert_trial(session, user, plan="pro", billing_cycle="yearly")
        await session.commit()
        assert isinstance(trial, Trial)
        assert trial.status == "converted"
        assert trial.conversion_data["plan_selected"] == "pro"
        assert user.subscription_plan == "pro"
        assert user.subscription_status == "active"

        metrics = await trial_service.conversion_metrics(session)
    assert metrics["total_trials"] == 1
    assert metrics["converted_trials"] == 1
    assert metrics["conversion_rate"] == 100.0
