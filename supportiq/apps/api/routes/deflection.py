from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.apps.api.deps import get_current_user, get_db
from supportiq.apps.api.rate_limit import rate_limit
from supportiq.domain.models import User
from supportiq.services.deflection import DeflectionSettings, deflection_metrics, learn_from_feedback


router = APIRouter(prefix="/deflection", tags=["deflection"])


class DeflectionSettingsUpdate(BaseModel):
    auto_response_enabled: bool | None = None
    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    escalation_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    response_language: str | None = Field(default=None, min_length=2, max_length=10)
    business_hours_only: bool | None = None
    excluded_categories: list[str] | None = Field(default=None, max_length=50)
    escalation_keywords: list[str] | None = Field(default=None, max_length=100)
    custom_instructions: str | None = Field(default=None, max_length=2000)

    model_config = {"extra": "forbid"}


class FeedbackRequest(BaseModel):
    ticket_id: str = Field(min_length=1)
    satisfied: bool
    feedback: str | None = Field(default=None, max_length=2000)


@router.get("/settings")
async def get_deflection_settings(
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
) -> dict[str, Any]:
    return {"settings": DeflectionSettings.from_stored(user.deflection_settings).as_dict()}


@router.put("/settings")
async def update_deflection_settings(
    payload: DeflectionSettingsUpdate,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Merge onto the stored overrides so omitted keys keep their values.
    stored = dict(user.deflection_settings or {})
    stored.update(payload.model_dump(exclude_unset=True))
    merged = DeflectionSettings.from_stored(stored)
    if merged.escalation_threshold >= merged.confidence_threshold:
        raise HTTPException(
            status_code=422,
            detail={
                "code": "VALIDATION_ERROR",
                "message": "escalation_threshold must be below confidence_threshold",
            },
        )
    try:
        user.deflection_settings = merged.as_dict()
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while saving deflection settings") from exc
    return {"success": True, "settings": merged.as_dict()}


@router.post("/feedback")
async def deflection_feedback(
    payload: FeedbackRequest,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        record = await learn_from_feedback(
            db, user.id, payload.ticket_id, satisfied=payload.satisfied, feedback=payload.feedback
        )
        if record is None:
            raise HTTPException(
                status_code=404,
                detail={"code": "RESPONSE_NOT_FOUND", "message": "No AI response found for this ticket"},
            )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while recording feedback") from exc
    return {"success": True, "response_id": record.id}


@router.get("/metrics")
async def get_deflection_metrics(
    days: int = Query(default=30, ge=1, le=365),
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        metrics = await deflection_metrics(db, user.id, days=days)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while loading deflection metrics") from exc
    return {"metrics": metrics}
