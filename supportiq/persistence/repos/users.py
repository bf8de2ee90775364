from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.domain.models import User


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_by_email(session: AsyncSession, email: str) -> User | None:
    # Emails are stored lower-cased so lookups stay case-insensitive.
    result = await session.execute(select(User).where(User.email == email.strip().lower()))
    return result.scalar_one_or_none()


async def get_by_workspace(session: AsyncSession, workspace_id: str) -> User | None:
    result = await session.execute(
        select(User).where(User.intercom_workspace_id == workspace_id).order_by(User.created_at).limit(1)
    )
    return result.scalar_one_or_none()


async def get_by_stripe_customer(session: AsyncSession, customer_id: str) -> User | None:
    result = await session.execute(select(User).where(User.stripe_customer_id == customer_id))
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    full_name: str | None = None,
    company: str | None = None,
    role: str = "user",
) -> User:
    user = User(
        email=email.strip().lower(),
        full_name=full_name,
        company=company,
        role=role,
        deflection_settings={},
    )
    session.add(user)
    await session.flush()
    return user


async def get_or_create_by_email(session: AsyncSession, email: str, **fields: Any) -> tuple[User, bool]:
    existing = await get_by_email(session, email)
    if existing is not None:
        return existing, False
    return await create_user(session, email=email, **fields), True


async def update_profile(session: AsyncSession, user: User, **fields: Any) -> User:
    # Only touch explicitly provided fields so partial updates stay partial.
    for key, value in fields.items():
        if value is not None:
            setattr(user, key, value)
    await session.flush()
    return user


async def list_users(session: AsyncSession, *, limit: int = 100, offset: int = 0) -> list[User]:
    result = await session.execute(
        select(User).order_by(User.created_at.desc(), User.id).limit(limit).offset(offset)
    )
    return list(result.scalars().all())


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(User.subscription_status, func.count(User.id)).group_by(User.subscription_status)
    )
    return {status: int(count) for status, count in result.all()}


async def count_by_plan(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(User.subscription_plan, func.count(User.id)).group_by(User.subscription_plan)
    )
    return {plan: int(count) for plan, count in result.all()}


async def list_connected_users(session: AsyncSession) -> list[User]:
    # Users with an Intercom connection are eligible for scheduled analysis.
    result = await session.execute(
        select(User).where(User.intercom_access_token.is_not(None)).order_by(User.id)
    )
    return list(result.scalars().all())


async def count_paying_by_plan(session: AsyncSession) -> dict[str, int]:
    # Paying accounts only; feeds recurring revenue estimates.
    result = await session.execute(
        select(User.subscription_plan, func.count(User.id))
        .where(User.subscription_status == "active")
        .group_by(User.subscription_plan)
    )
    return {plan: int(count) for plan, count in result.all()}


async def count_created_since(session: AsyncSession, since: datetime) -> int:
    result = await session.execute(select(func.count(User.id)).where(User.created_at >= since))
    return int(result.scalar_one())
