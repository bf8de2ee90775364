from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.apps.api.deps import get_current_user, get_db
from supportiq.apps.api.rate_limit import rate_limit
from supportiq.domain.models import User, as_utc
from supportiq.services import billing
from supportiq.services import trial as trial_service


router = APIRouter(prefix="/stripe", tags=["billing"])


class CheckoutRequest(BaseModel):
    plan_id: Literal["starter", "pro", "enterprise"]
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    is_trial_conversion: bool = False


@router.get("/plans")
async def list_plans(user: User = Depends(get_current_user)) -> dict[str, Any]:
    return {
        "plans": [
            {
                "id": plan.key,
                "name": plan.name,
                "features": list(plan.features),
                "monthly_cents": billing.plan_amount_cents(plan, "monthly"),
                "yearly_cents": billing.plan_amount_cents(plan, "yearly"),
                "current": plan.key == user.subscription_plan,
            }
            for plan in billing.PLANS.values()
        ]
    }


@router.post("/checkout")
async def create_checkout(
    payload: CheckoutRequest,
    user: User = Depends(get_current_user),
    _rl: None = Depends(rate_limit("api")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    trial_end = None
    if payload.is_trial_conversion:
        try:
            status = await trial_service.get_trial_status(db, user.id)
        except SQLAlchemyError as exc:
            raise HTTPException(status_code=500, detail="Database error while loading trial") from exc
        # Carry remaining trial days into the subscription.
        if status.trial is not None and not status.is_expired:
            trial_end = as_utc(status.trial.expires_at)

    checkout = await billing.create_checkout_session(
        user,
        plan_key=payload.plan_id,
        billing_cycle=payload.billing_cycle,
        is_trial_conversion=payload.is_trial_conversion,
        trial_end=trial_end,
    )
    return {
        "success": True,
        "checkout_url": checkout.url,
        "session_id": checkout.id,
        "amount_cents": checkout.amount_cents,
    }
