from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.domain.models import AiResponse


async def create_response(session: AsyncSession, **fields: Any) -> AiResponse:
    record = AiResponse(**fields)
    session.add(record)
    await session.flush()
    return record


async def latest_for_ticket(session: AsyncSession, user_id: str, ticket_id: str) -> AiResponse | None:
    result = await session.execute(
        select(AiResponse)
        .where(AiResponse.user_id == user_id, AiResponse.ticket_id == ticket_id)
        .order_by(AiResponse.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_since(session: AsyncSession, user_id: str, since: datetime) -> list[AiResponse]:
    result = await session.execute(
        select(AiResponse)
        .where(AiResponse.user_id == user_id, AiResponse.created_at >= since)
        .order_by(AiResponse.created_at)
    )
    return list(result.scalars().all())


async def count_by_user(session: AsyncSession, user_ids: list[str]) -> dict[str, int]:
    if not user_ids:
        return {}
    result = await session.execute(
        select(AiResponse.user_id, func.count(AiResponse.id))
        .where(AiResponse.user_id.in_(user_ids))
        .group_by(AiResponse.user_id)
    )
    return {user_id: int(count) for user_id, count in result.all()}


async def totals_since(session: AsyncSession, since: datetime) -> tuple[int, float]:
    # Platform-wide response count and spend for admin analytics.
    result = await session.execute(
        select(func.count(AiResponse.id), func.coalesce(func.sum(AiResponse.cost_usd), 0.0)).where(
            AiResponse.created_at >= since
        )
    )
    count, cost = result.one()
    return int(count), float(cost)
