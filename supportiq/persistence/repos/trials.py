from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.domain.models import Trial


async def latest_for_user(session: AsyncSession, user_id: str) -> Trial | None:
    result = await session.execute(
        select(Trial).where(Trial.user_id == user_id).order_by(Trial.started_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def active_for_user(session: AsyncSession, user_id: str) -> Trial | None:
    result = await session.execute(
        select(Trial)
        .where(Trial.user_id == user_id, Trial.status == "active")
        .order_by(Trial.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_overdue(session: AsyncSession, now: datetime) -> list[Trial]:
    result = await session.execute(
        select(Trial).where(Trial.status == "active", Trial.expires_at < now).order_by(Trial.expires_at)
    )
    return list(result.scalars().all())


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(select(Trial.status, func.count(Trial.id)).group_by(Trial.status))
    return {status: int(count) for status, count in result.all()}


async def list_converted(session: AsyncSession) -> list[Trial]:
    result = await session.execute(select(Trial).where(Trial.status == "converted"))
    return list(result.scalars().all())
