from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.domain.models import OAuthState


async def create_state(
    session: AsyncSession,
    *,
    state: str,
    user_id: str,
    return_url: str | None,
    expires_at: datetime,
) -> OAuthState:
    record = OAuthState(state=state, user_id=user_id, return_url=return_url, expires_at=expires_at)
    session.add(record)
    await session.flush()
    return record


async def pop_state(session: AsyncSession, state: str) -> OAuthState | None:
    # States are single use; delete on read to block replays.
    result = await session.execute(select(OAuthState).where(OAuthState.state == state))
    record = result.scalar_one_or_none()
    if record is not None:
        await session.execute(delete(OAuthState).where(OAuthState.state == state))
    return record


async def purge_expired(session: AsyncSession, now: datetime) -> int:
    result = await session.execute(delete(OAuthState).where(OAuthState.expires_at < now))
    return int(result.rowcount or 0)
