from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.domain.models import SyncLog, utc_now


async def start_log(session: AsyncSession, *, user_id: str, sync_type: str) -> SyncLog:
    log = SyncLog(user_id=user_id, sync_type=sync_type, status="in_progress", started_at=utc_now())
    session.add(log)
    await session.flush()
    return log


async def get_log(session: AsyncSession, user_id: str, sync_id: str) -> SyncLog | None:
    result = await session.execute(select(SyncLog).where(SyncLog.id == sync_id, SyncLog.user_id == user_id))
    return result.scalar_one_or_none()


async def finish_log(
    session: AsyncSession,
    log: SyncLog,
    *,
    status: str,
    records_processed: int,
    error_message: str | None = None,
) -> SyncLog:
    log.status = status
    log.records_processed = records_processed
    log.error_message = error_message
    log.completed_at = utc_now()
    await session.flush()
    return log


async def latest_logs(session: AsyncSession, user_id: str, *, sync_type: str | None = None, limit: int = 10) -> list[SyncLog]:
    filters = [SyncLog.user_id == user_id]
    if sync_type:
        filters.append(SyncLog.sync_type == sync_type)
    result = await session.execute(
        select(SyncLog).where(*filters).order_by(SyncLog.started_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def in_progress_for_user(session: AsyncSession, user_id: str, sync_type: str) -> SyncLog | None:
    result = await session.execute(
        select(SyncLog)
        .where(SyncLog.user_id == user_id, SyncLog.sync_type == sync_type, SyncLog.status == "in_progress")
        .order_by(SyncLog.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
