from __future__ import annotations

from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.apps.api.deps import get_current_user, get_db
from supportiq.apps.api.rate_limit import rate_limit
from supportiq.domain.models import User, utc_now
from supportiq.persistence.repos import insights as insights_repo
from supportiq.persistence.repos import tickets as tickets_repo
from supportiq.services.insights import (
    INSIGHT_STATUSES,
    generate_insights,
    insight_to_dict,
    update_insight_status,
)


router = APIRouter(prefix="/insights", tags=["insights"])


class GenerateInsightsRequest(BaseModel):
    days: int = 30


class InsightStatusUpdate(BaseModel):
    status: str


@router.get("")
async def list_insights(
    status: str | None = Query(default=None),
    type_: str | None = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=100),
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        insights = await insights_repo.list_insights(db, user.id, status=status, insight_type=type_, limit=limit)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing insights") from exc
    return {"insights": [insight_to_dict(insight) for insight in insights]}


@router.post("/generate")
async def generate(
    payload: GenerateInsightsRequest | None = None,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("analysis")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    days = min(max((payload.days if payload else 30), 1), 365)
    try:
        tickets = await tickets_repo.list_since(db, user.id, utc_now() - timedelta(days=days))
        records = await generate_insights(db, user.id, tickets)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while generating insights") from exc
    return {
        "success": True,
        "ticket_count": len(tickets),
        "insights": [insight_to_dict(insight) for insight in records],
    }


@router.patch("/{insight_id}")
async def patch_insight(
    insight_id: str,
    payload: InsightStatusUpdate,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    if payload.status not in INSIGHT_STATUSES:
        raise HTTPException(
            status_code=422,
            detail={"code": "VALIDATION_ERROR", "message": f"status must be one of {', '.join(INSIGHT_STATUSES)}"},
        )
    try:
        insight = await update_insight_status(db, user.id, insight_id, payload.status)
        if insight is None:
            raise HTTPException(
                status_code=404, detail={"code": "INSIGHT_NOT_FOUND", "message": "Insight not found"}
            )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating insight") from exc
    return {"insight": insight_to_dict(insight)}
