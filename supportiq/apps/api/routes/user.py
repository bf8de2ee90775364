from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.apps.api.deps import get_current_user, get_db
from supportiq.apps.api.rate_limit import rate_limit
from supportiq.domain.models import User
from supportiq.persistence.repos import users as users_repo


router = APIRouter(prefix="/user", tags=["user"])


class ProfileUpdateRequest(BaseModel):
    full_name: str | None = Field(default=None, min_length=1, max_length=200)
    company: str | None = Field(default=None, min_length=1, max_length=200)

    model_config = {"extra": "forbid"}


class OnboardingRequest(BaseModel):
    full_name: str | None = Field(default=None, min_length=1, max_length=200)
    company: str | None = Field(default=None, min_length=1, max_length=200)


def profile_payload(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "company": user.company,
        "role": user.role,
        "subscription_status": user.subscription_status,
        "subscription_plan": user.subscription_plan,
        "billing_cycle": user.billing_cycle,
        "onboarding_completed": user.onboarding_completed,
        "intercom_connected": bool(user.intercom_access_token),
        "intercom_workspace_id": user.intercom_workspace_id,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


@router.get("/profile")
async def get_profile(
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
) -> dict[str, Any]:
    return {"user": profile_payload(user)}


@router.put("/profile")
async def update_profile(
    payload: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        await users_repo.update_profile(db, user, **payload.model_dump(exclude_unset=True))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating profile") from exc
    return {"user": profile_payload(user)}


@router.post("/onboarding")
async def complete_onboarding(
    payload: OnboardingRequest,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        await users_repo.update_profile(
            db, user, **payload.model_dump(exclude_unset=True), onboarding_completed=True
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while saving onboarding") from exc
    return {"success": True, "user": profile_payload(user)}
