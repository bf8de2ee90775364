from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.core.config import get_settings
from supportiq.core.errors import SupportIQError, TrialLimitExceededError
from supportiq.domain.models import Trial, User, as_utc, utc_now
from supportiq.persistence.repos import trials as trials_repo
from supportiq.persistence.repos import users as users_repo


logger = logging.getLogger(__name__)

# Usage counters and the limit each one is checked against.
USAGE_LIMIT_FIELDS: dict[str, str] = {
    "ai_responses_used": "ai_responses",
    "team_members_added": "team_members",
    "integrations_connected": "integrations",
    "tickets_processed": "tickets_per_month",
    "storage_used_gb": "storage_gb",
}


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    remaining: int
    limit: int
    used: int


@dataclass(frozen=True)
class TrialStatus:
    trial: Trial | None
    days_remaining: int
    is_expired: bool


def default_limits() -> dict[str, int]:
    settings = get_settings()
    return {
        "ai_responses": settings.trial_limit_ai_responses,
        "team_members": settings.trial_limit_team_members,
        "integrations": settings.trial_limit_integrations,
        "tickets_per_month": settings.trial_limit_tickets_per_month,
        "storage_gb": settings.trial_limit_storage_gb,
    }


def empty_usage() -> dict[str, int]:
    return {field: 0 for field in USAGE_LIMIT_FIELDS}


def _validate_operation(operation: str) -> str:
    if operation not in USAGE_LIMIT_FIELDS:
        raise ValueError(f"Unknown trial usage field: {operation}")
    return operation


async def start_trial(session: AsyncSession, user: User, *, now: datetime | None = None) -> Trial:
    # One active trial per user; restarting returns the existing one.
    existing = await trials_repo.active_for_user(session, user.id)
    if existing is not None:
        return existing
    previous = await trials_repo.latest_for_user(session, user.id)
    if previous is not None:
        raise SupportIQError("Trial already used for this account", code="TRIAL_ALREADY_USED", status_code=409)
    started_at = now or utc_now()
    trial = Trial(
        user_id=user.id,
        started_at=started_at,
        expires_at=started_at + timedelta(days=get_settings().trial_days),
        status="active",
        limits=default_limits(),
        usage=empty_usage(),
    )
    session.add(trial)
    user.subscription_status = "trialing"
    await session.flush()
    logger.info("trial_started user_id=%s expires_at=%s", user.id, trial.expires_at.isoformat())
    return trial


async def get_trial_status(session: AsyncSession, user_id: str, *, now: datetime | None = None) -> TrialStatus:
    trial = await trials_repo.latest_for_user(session, user_id)
    if trial is None:
        return TrialStatus(trial=None, days_remaining=0, is_expired=False)
    current = now or utc_now()
    expires_at = as_utc(trial.expires_at)
    remaining_s = (expires_at - current).total_seconds()
    days_remaining = max(0, int(-(-remaining_s // 86400)))
    is_expired = trial.status == "expired" or (trial.status == "active" and remaining_s <= 0)
    return TrialStatus(trial=trial, days_remaining=days_remaining, is_expired=is_expired)


def evaluate_limit(trial: Trial | None, operation: str) -> LimitCheck:
    _validate_operation(operation)
    if trial is None or trial.status != "active":
        return LimitCheck(allowed=False, remaining=0, limit=0, used=0)
    limit = int((trial.limits or {}).get(USAGE_LIMIT_FIELDS[operation], 0))
    used = int((trial.usage or {}).get(operation, 0))
    remaining = limit - used
    return LimitCheck(allowed=remaining > 0, remaining=remaining, limit=limit, used=used)


async def check_trial_limits(session: AsyncSession, user_id: str, operation: str) -> LimitCheck:
    trial = await trials_repo.active_for_user(session, user_id)
    return evaluate_limit(trial, operation)


async def enforce_trial_limit(session: AsyncSession, user_id: str, operation: str) -> None:
    # Only users on an active trial are metered; paid and legacy accounts pass through.
    trial = await trials_repo.active_for_user(session, user_id)
    if trial is None:
        return
    check = evaluate_limit(trial, operation)
    if not check.allowed:
        raise TrialLimitExceededError(
            f"Trial limit reached for {USAGE_LIMIT_FIELDS[operation]}",
            context={"limit": check.limit, "used": check.used},
        )


async def remaining_allowance(session: AsyncSession, user_id: str, operation: str) -> int | None:
    # None means unmetered: the user has no active trial.
    trial = await trials_repo.active_for_user(session, user_id)
    if trial is None:
        return None
    return max(evaluate_limit(trial, operation).remaining, 0)


async def track_usage(session: AsyncSession, user_id: str, operation: str, amount: int = 1) -> Trial | None:
    _validate_operation(operation)
    trial = await trials_repo.active_for_user(session, user_id)
    if trial is None:
        return None
    usage = dict(trial.usage or {})
    usage[operation] = int(usage.get(operation, 0)) + amount
    # Reassign so the JSON column is flagged dirty.
    trial.usage = usage
    await session.flush()
    return trial


async def convert_trial(
    session: AsyncSession,
    user: User,
    *,
    plan: str,
    billing_cycle: str = "monthly",
    reason: str = "upgrade",
    now: datetime | None = None,
) -> Trial | None:
    converted_at = now or utc_now()
    trial = await trials_repo.active_for_user(session, user.id)
    if trial is not None:
        trial.status = "converted"
        trial.conversion_data = {
            "converted_at": converted_at.isoformat(),
            "plan_selected": plan,
            "billing_cycle": billing_cycle,
            "conversion_reason": reason,
            "value_realized": True,
        }
    user.subscription_plan = plan
    user.subscription_status = "active"
    user.billing_cycle = billing_cycle
    await session.flush()
    logger.info("trial_converted user_id=%s plan=%s", user.id, plan)
    return trial


async def expire_trial(session: AsyncSession, user_id: str) -> bool:
    trial = await trials_repo.active_for_user(session, user_id)
    if trial is None:
        return False
    trial.status = "expired"
    user = await users_repo.get_user(session, user_id)
    # Never downgrade an account that already converted through billing.
    if user is not None and user.subscription_status != "active":
        user.subscription_status = "expired"
    await session.flush()
    logger.info("trial_expired user_id=%s", user_id)
    return True


async def expire_overdue_trials(session: AsyncSession, *, now: datetime | None = None) -> int:
    overdue = await trials_repo.list_overdue(session, now or utc_now())
    expired = 0
    for trial in overdue:
        if await expire_trial(session, trial.user_id):
            expired += 1
    return expired


def _trial_duration_days(trial: Trial) -> float:
    started = as_utc(trial.started_at)
    converted_at = (trial.conversion_data or {}).get("converted_at")
    end = datetime.fromisoformat(converted_at) if converted_at else as_utc(trial.expires_at)
    return (as_utc(end) - started).total_seconds() / 86400.0


async def conversion_metrics(session: AsyncSession) -> dict[str, Any]:
    counts = await trials_repo.count_by_status(session)
    total = sum(counts.values())
    converted = await trials_repo.list_converted(session)
    expired_count = counts.get("expired", 0)
    durations = [_trial_duration_days(trial) for trial in converted]
    return {
        "total_trials": total,
        "active_trials": counts.get("active", 0),
        "converted_trials": counts.get("converted", 0),
        "expired_trials": expired_count,
        "conversion_rate": round(counts.get("converted", 0) / total * 100, 2) if total else 0.0,
        "avg_days_to_convert": round(sum(durations) / len(durations), 2) if durations else 0.0,
    }
