from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.apps.api.deps import get_current_user, get_db
from supportiq.apps.api.rate_limit import rate_limit
from supportiq.domain.models import Trial, User
from supportiq.services import trial as trial_service


router = APIRouter(prefix="/trial", tags=["trial"])


def trial_payload(trial: Trial) -> dict[str, Any]:
    return {
        "id": trial.id,
        "status": trial.status,
        "started_at": trial.started_at.isoformat() if trial.started_at else None,
        "expires_at": trial.expires_at.isoformat() if trial.expires_at else None,
        "limits": dict(trial.limits or {}),
        "usage": dict(trial.usage or {}),
        "conversion_data": trial.conversion_data,
    }


@router.post("/start")
async def start_trial(
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("auth")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        trial = await trial_service.start_trial(db, user)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while starting trial") from exc
    return {"success": True, "trial": trial_payload(trial)}


@router.get("/status")
async def trial_status(
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        status = await trial_service.get_trial_status(db, user.id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while loading trial") from exc
    if status.trial is None:
        return {"has_trial": False, "trial": None, "days_remaining": 0, "is_expired": False}
    limits = {
        operation: trial_service.evaluate_limit(status.trial, operation).remaining
        for operation in trial_service.USAGE_LIMIT_FIELDS
    }
    return {
        "has_trial": True,
        "trial": trial_payload(status.trial),
        "days_remaining": status.days_remaining,
        "is_expired": status.is_expired,
        "remaining": limits,
    }
