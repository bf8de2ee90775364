from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.domain.models import WebhookLog


async def record_webhook(
    session: AsyncSession,
    *,
    provider: str,
    event_type: str,
    event_data: dict[str, Any],
    status: str,
    user_id: str | None = None,
    error_message: str | None = None,
) -> WebhookLog:
    log = WebhookLog(
        user_id=user_id,
        provider=provider,
        event_type=event_type,
        event_data=event_data,
        status=status,
        error_message=error_message,
    )
    session.add(log)
    await session.flush()
    return log


async def list_recent(session: AsyncSession, *, provider: str | None = None, limit: int = 50) -> list[WebhookLog]:
    stmt = select(WebhookLog)
    if provider:
        stmt = stmt.where(WebhookLog.provider == provider)
    result = await session.execute(stmt.order_by(WebhookLog.processed_at.desc()).limit(limit))
    return list(result.scalars().all())
