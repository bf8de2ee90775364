from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.domain.models import Ticket


async def get_ticket(session: AsyncSession, user_id: str, ticket_id: str) -> Ticket | None:
    # Scope by user to prevent cross-account ticket access.
    result = await session.execute(
        select(Ticket).where(Ticket.id == ticket_id, Ticket.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_by_external_id(
    session: AsyncSession, user_id: str, source: str, external_id: str
) -> Ticket | None:
    result = await session.execute(
        select(Ticket).where(
            Ticket.user_id == user_id,
            Ticket.source == source,
            Ticket.external_id == external_id,
        )
    )
    return result.scalar_one_or_none()


async def list_tickets(
    session: AsyncSession,
    user_id: str,
    *,
    status: str | None = None,
    category: str | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Ticket], int]:
    filters = [Ticket.user_id == user_id]
    if status:
        filters.append(Ticket.status == status)
    if category:
        filters.append(Ticket.category == category)
    if search:
        pattern = f"%{search}%"
        filters.append(or_(Ticket.subject.ilike(pattern), Ticket.content.ilike(pattern)))
    total = await session.scalar(select(func.count(Ticket.id)).where(*filters))
    result = await session.execute(
        select(Ticket)
        .where(*filters)
        .order_by(Ticket.created_at.desc(), Ticket.id)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total or 0)


async def list_by_ids(session: AsyncSession, user_id: str, ticket_ids: Iterable[str]) -> list[Ticket]:
    ids = list(ticket_ids)
    if not ids:
        return []
    result = await session.execute(
        select(Ticket).where(Ticket.user_id == user_id, Ticket.id.in_(ids)).order_by(Ticket.created_at)
    )
    return list(result.scalars().all())


async def list_unanalyzed(session: AsyncSession, user_id: str, *, limit: int = 50) -> list[Ticket]:
    result = await session.execute(
        select(Ticket)
        .where(Ticket.user_id == user_id, Ticket.analyzed_at.is_(None))
        .order_by(Ticket.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_similarity_candidates(
    session: AsyncSession,
    user_id: str,
    *,
    exclude_id: str | None = None,
    limit: int = 100,
) -> list[Ticket]:
    # Bounded candidate list: categorized tickets that already carry embeddings.
    filters = [
        Ticket.user_id == user_id,
        Ticket.category.is_not(None),
        Ticket.embedding.is_not(None),
    ]
    if exclude_id is not None:
        filters.append(Ticket.id != exclude_id)
    result = await session.execute(
        select(Ticket).where(*filters).order_by(Ticket.created_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def list_since(session: AsyncSession, user_id: str, since: datetime) -> list[Ticket]:
    result = await session.execute(
        select(Ticket)
        .where(Ticket.user_id == user_id, Ticket.created_at >= since)
        .order_by(Ticket.created_at)
    )
    return list(result.scalars().all())


async def count_for_user(session: AsyncSession, user_id: str) -> int:
    total = await session.scalar(select(func.count(Ticket.id)).where(Ticket.user_id == user_id))
    return int(total or 0)


async def count_all(session: AsyncSession) -> int:
    total = await session.scalar(select(func.count(Ticket.id)))
    return int(total or 0)


async def create_ticket(session: AsyncSession, *, user_id: str, **fields: Any) -> Ticket:
    ticket = Ticket(user_id=user_id, **fields)
    session.add(ticket)
    await session.flush()
    return ticket


async def upsert_external(
    session: AsyncSession,
    *,
    user_id: str,
    source: str,
    external_id: str,
    fields: dict[str, Any],
) -> tuple[Ticket, bool]:
    # Match on (user, source, external id) so repeated webhooks update in place.
    existing = await get_by_external_id(session, user_id, source, external_id)
    if existing is not None:
        for key, value in fields.items():
            setattr(existing, key, value)
        await session.flush()
        return existing, False
    ticket = Ticket(user_id=user_id, source=source, external_id=external_id, **fields)
    session.add(ticket)
    await session.flush()
    return ticket, True


async def delete_ticket(session: AsyncSession, ticket: Ticket) -> None:
    await session.delete(ticket)
    await session.flush()


async def count_by_user(session: AsyncSession, user_ids: list[str]) -> dict[str, int]:
    if not user_ids:
        return {}
    result = await session.execute(
        select(Ticket.user_id, func.count(Ticket.id)).where(Ticket.user_id.in_(user_ids)).group_by(Ticket.user_id)
    )
    return {user_id: int(count) for user_id, count in result.all()}


async def count_created_since(session: AsyncSession, since: datetime) -> int:
    total = await session.scalar(select(func.count(Ticket.id)).where(Ticket.created_at >= since))
    return int(total or 0)
