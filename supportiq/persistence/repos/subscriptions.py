from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.domain.models import Subscription


async def get_by_stripe_id(session: AsyncSession, stripe_subscription_id: str) -> Subscription | None:
    result = await session.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


async def latest_for_user(session: AsyncSession, user_id: str) -> Subscription | None:
    result = await session.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def upsert_subscription(
    session: AsyncSession, *, stripe_subscription_id: str, user_id: str, fields: dict[str, Any]
) -> Subscription:
    # Stripe retries events; keyed upserts keep delivery idempotent.
    existing = await get_by_stripe_id(session, stripe_subscription_id)
    if existing is None:
        existing = Subscription(stripe_subscription_id=stripe_subscription_id, user_id=user_id, **fields)
        session.add(existing)
    else:
        for key, value in fields.items():
            setattr(existing, key, value)
    await session.flush()
    return existing
