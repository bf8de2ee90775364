from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.domain.models import ApiSession, User, utc_now


async def create_session(
    session: AsyncSession,
    *,
    user_id: str,
    token_prefix: str,
    token_hash: str,
    expires_at: datetime | None,
) -> ApiSession:
    record = ApiSession(
        user_id=user_id,
        token_prefix=token_prefix,
        token_hash=token_hash,
        expires_at=expires_at,
    )
    session.add(record)
    await session.flush()
    return record


async def get_active_by_hash(session: AsyncSession, token_hash: str) -> tuple[ApiSession, User] | None:
    # Join users so one round trip resolves the principal.
    result = await session.execute(
        select(ApiSession, User)
        .join(User, User.id == ApiSession.user_id)
        .where(ApiSession.token_hash == token_hash, ApiSession.revoked_at.is_(None))
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def touch_last_used(session: AsyncSession, session_id: str) -> None:
    await session.execute(
        update(ApiSession).where(ApiSession.id == session_id).values(last_used_at=utc_now())
    )


async def revoke_session(session: AsyncSession, token_hash: str) -> bool:
    result = await session.execute(
        update(ApiSession)
        .where(ApiSession.token_hash == token_hash, ApiSession.revoked_at.is_(None))
        .values(revoked_at=utc_now())
    )
    return bool(result.rowcount)
