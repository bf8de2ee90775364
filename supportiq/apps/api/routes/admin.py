from __future__ import annotations

from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.apps.api.deps import Principal, get_db, invalidate_cached_principals, require_admin
from supportiq.apps.api.rate_limit import rate_limit
from supportiq.domain.models import utc_now
from supportiq.persistence.db import ping
from supportiq.persistence.repos import ai_responses as ai_responses_repo
from supportiq.persistence.repos import tickets as tickets_repo
from supportiq.persistence.repos import users as users_repo
from supportiq.persistence.repos import webhook_logs as webhook_logs_repo
from supportiq.services.billing import PLANS
from supportiq.services.telemetry import availability, counters_snapshot, external_call_summary, p95_latency
from supportiq.services.trial import conversion_metrics


router = APIRouter(prefix="/admin", tags=["admin"])

_RANGES = {"7d": 7, "30d": 30, "90d": 90}
_TELEMETRY_WINDOW_S = 300


class MakeAdminRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)


@router.get("/health")
async def admin_health(
    principal: Principal = Depends(require_admin),
    _rl: None = Depends(rate_limit("api")),
) -> dict[str, Any]:
    # Report dependency status alongside in-process request telemetry.
    try:
        database_ok = await ping()
    except SQLAlchemyError:
        database_ok = False
    return {
        "status": "ok" if database_ok else "degraded",
        "checks": {"database": "ok" if database_ok else "error"},
        "telemetry": {
            "window_s": _TELEMETRY_WINDOW_S,
            "availability_pct": availability(_TELEMETRY_WINDOW_S),
            "p95_latency_ms": p95_latency(_TELEMETRY_WINDOW_S),
            "external_calls": external_call_summary(_TELEMETRY_WINDOW_S),
            "counters": counters_snapshot(),
        },
    }


@router.get("/analytics")
async def admin_analytics(
    range_: str = Query(default="30d", alias="range"),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    days = _RANGES.get(range_, 30)
    since = utc_now() - timedelta(days=days)
    try:
        statuses = await users_repo.count_by_status(db)
        paying = await users_repo.count_paying_by_plan(db)
        signups = await users_repo.count_created_since(db, since)
        trials = await conversion_metrics(db)
        tickets_total = await tickets_repo.count_all(db)
        tickets_recent = await tickets_repo.count_created_since(db, since)
        responses, ai_cost = await ai_responses_repo.totals_since(db, since)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while loading analytics") from exc
    mrr = sum(PLANS[plan].price_usd * count for plan, count in paying.items() if plan in PLANS)
    paying_total = sum(paying.values())
    return {
        "range": range_ if range_ in _RANGES else "30d",
        "conversion_funnel": {
            "signups": signups,
            "trials": trials["total_trials"],
            "converted": trials["converted_trials"],
            "conversion_rate": trials["conversion_rate"],
            "avg_days_to_convert": trials["avg_days_to_convert"],
        },
        "revenue_metrics": {
            "mrr": mrr,
            "arr": mrr * 12,
            "paying_customers": paying_total,
            "arpu": round(mrr / paying_total, 2) if paying_total else 0.0,
            "by_plan": paying,
        },
        "usage_metrics": {
            "total_tickets": tickets_total,
            "tickets_in_range": tickets_recent,
            "ai_responses_in_range": responses,
            "ai_cost_usd": round(ai_cost, 4),
        },
        "accounts_by_status": statuses,
    }


@router.get("/customers")
async def admin_customers(
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        users = await users_repo.list_users(db, limit=limit, offset=offset)
        ids = [user.id for user in users]
        ticket_counts = await tickets_repo.count_by_user(db, ids)
        response_counts = await ai_responses_repo.count_by_user(db, ids)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing customers") from exc
    customers = [
        {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "company": user.company,
            "role": user.role,
            "subscription_status": user.subscription_status,
            "subscription_plan": user.subscription_plan,
            "stripe_customer_id": user.stripe_customer_id,
            "intercom_connected": bool(user.intercom_access_token),
            "tickets": ticket_counts.get(user.id, 0),
            "ai_responses_used": response_counts.get(user.id, 0),
            "created_at": user.created_at.isoformat() if user.created_at else None,
        }
        for user in users
    ]
    return {"customers": customers, "limit": limit, "offset": offset}


@router.get("/webhooks")
async def admin_webhooks(
    provider: str | None = Query(default=None),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        logs = await webhook_logs_repo.list_recent(db, provider=provider)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing webhooks") from exc
    return {
        "webhooks": [
            {
                "id": log.id,
                "provider": log.provider,
                "event_type": log.event_type,
                "status": log.status,
                "user_id": log.user_id,
                "error_message": log.error_message,
                "processed_at": log.processed_at.isoformat() if log.processed_at else None,
            }
            for log in logs
        ]
    }


@router.post("/make-admin")
async def make_admin(
    payload: MakeAdminRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        user = await users_repo.get_by_email(db, payload.email)
        if user is None:
            raise HTTPException(status_code=404, detail={"code": "USER_NOT_FOUND", "message": "User not found"})
        user.role = "admin"
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating role") from exc
    # Role changes must not wait out the principal cache.
    await invalidate_cached_principals(user.id)
    return {
        "success": True,
        "message": f"User {user.email} is now an admin",
        "user": {"id": user.id, "email": user.email, "role": user.role},
    }
