from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.domain.models import Insight


async def list_insights(
    session: AsyncSession,
    user_id: str,
    *,
    status: str | None = None,
    insight_type: str | None = None,
    limit: int = 50,
) -> list[Insight]:
    filters = [Insight.user_id == user_id]
    if status:
        filters.append(Insight.status == status)
    if insight_type:
        filters.append(Insight.type == insight_type)
    result = await session.execute(
        select(Insight)
        .where(*filters)
        .order_by(Insight.impact_score.desc(), Insight.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_insight(session: AsyncSession, user_id: str, insight_id: str) -> Insight | None:
    result = await session.execute(
        select(Insight).where(Insight.id == insight_id, Insight.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def replace_active(session: AsyncSession, user_id: str, insights: list[dict[str, Any]]) -> list[Insight]:
    # Regeneration replaces active insights; dismissed/implemented ones are kept as history.
    await session.execute(
        delete(Insight).where(Insight.user_id == user_id, Insight.status == "active")
    )
    records = [Insight(user_id=user_id, status="active", **fields) for fields in insights]
    session.add_all(records)
    await session.flush()
    return records
